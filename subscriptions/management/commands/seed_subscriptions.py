from decimal import Decimal
from pathlib import Path
import json

import yaml
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from subscriptions.models import Country, Plan


class Command(BaseCommand):
    help = "Seed plans and countries from a JSON or YAML file"

    def add_arguments(self, parser):
        parser.add_argument("file_path", type=str, help="Path to JSON/YAML config")

    def handle(self, *args, **opts):
        p = Path(opts["file_path"])
        if not p.exists():
            raise CommandError(f"File not found: {p}")

        if p.suffix.lower() in [".yaml", ".yml"]:
            data = yaml.safe_load(p.read_text(encoding="utf-8"))
        else:
            data = json.loads(p.read_text(encoding="utf-8"))

        if not isinstance(data, dict):
            raise CommandError("Expected a mapping with 'plans' and/or 'countries' lists.")

        plans = data.get("plans") or []
        if sum(1 for cfg in plans if cfg.get("is_default")) > 1:
            raise CommandError("Only one plan can be marked is_default.")

        with transaction.atomic():
            for cfg in plans:
                if cfg.get("is_default"):
                    # single default: release the flag before claiming it
                    Plan.objects.filter(is_default=True).exclude(name=cfg["name"]).update(is_default=False)
                Plan.objects.update_or_create(
                    name=cfg["name"],
                    defaults={
                        "description": cfg.get("description", ""),
                        "duration_days": int(cfg["duration_days"]),
                        "price_per_country": Decimal(str(cfg["price_per_country"])),
                        "is_active": cfg.get("is_active", True),
                        "is_default": bool(cfg.get("is_default", False)),
                        "sort_order": cfg.get("sort_order", 0),
                    },
                )

            countries = data.get("countries") or []
            for cfg in countries:
                Country.objects.update_or_create(
                    code=cfg["code"].upper(),
                    defaults={
                        "name": cfg["name"],
                        "description": cfg.get("description", ""),
                        "sort_order": cfg.get("sort_order", 0),
                    },
                )

        self.stdout.write(self.style.SUCCESS(
            f"Seeded {len(plans)} plan(s) and {len(countries)} country(ies)."
        ))


# Run the seeder:

# python manage.py seed_subscriptions config/catalog.json


# If you use YAML:

# python manage.py seed_subscriptions config/catalog.yaml
