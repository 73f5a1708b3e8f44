from django.contrib.auth.models import User
from django.db import models


class CandidateProfile(models.Model):
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="candidate_profile")
    full_name = models.CharField(max_length=200, blank=True)

    # Customer record at the payment processor
    billing_provider = models.CharField(max_length=24, blank=True)
    billing_customer_id = models.CharField(max_length=128, blank=True)

    # Read model of the current subscription, rebuilt by candidates.projections
    current_subscription = models.ForeignKey(
        "subscriptions.Subscription", on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    last_plan = models.ForeignKey(
        "subscriptions.Plan", on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    qty = models.PositiveIntegerField(default=0)
    unit_price = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    expiry_date = models.DateTimeField(null=True, blank=True)
    summary_refreshed_on = models.DateTimeField(null=True, blank=True)

    created_on = models.DateTimeField(auto_now_add=True)
    updated_on = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.display_name

    @property
    def display_name(self):
        return self.full_name or self.user.get_full_name() or self.user.username

    def customer_id_for(self, provider):
        if self.billing_provider == provider:
            return self.billing_customer_id or None
        return None
