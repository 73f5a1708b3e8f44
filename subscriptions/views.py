import logging

from rest_framework import generics, status
from rest_framework.response import Response
from rest_framework.views import APIView

from auth_core.views import AdminViewMixin, PrivateUserViewMixin, PublicViewMixin
from subscriptions.payment_gateway.router import get_gateway
from .catalog import default_plan, list_active_plans, list_countries
from .conf import default_currency, default_provider
from .exceptions import WebhookVerificationError
from .pagination import SubscriptionPagination
from .reconciler import handle_webhook
from .serializers import (
    AddCountriesRequestSerializer,
    AdminSubscriptionSerializer,
    CalculateRequestSerializer,
    CountrySerializer,
    CreateSubscriptionRequestSerializer,
    PlanSerializer,
    QuoteSerializer,
    RemoveCountriesRequestSerializer,
    SubscriptionSerializer,
)
from .services import (
    add_countries,
    cancel_subscription,
    create_subscription,
    get_subscription,
    get_subscription_for,
    issue_client_token,
    list_all_subscriptions,
    list_candidate_subscriptions,
    quote_for_candidate,
    remove_countries,
)

logger = logging.getLogger(__name__)


class PlanListView(PrivateUserViewMixin, generics.ListAPIView):
    """
    GET /api/plans/
    Returns all active plans (non-paginated), shortest first.
    """
    serializer_class = PlanSerializer
    pagination_class = None

    def get_queryset(self):
        return list_active_plans()

    def list(self, request, *args, **kwargs):
        plans = self.get_serializer(self.get_queryset(), many=True).data
        default = default_plan()
        return Response({
            "plans": plans,
            "default_plan_id": str(default.pk) if default else None,
        })


class CountryListView(PrivateUserViewMixin, generics.ListAPIView):
    """GET /api/countries/"""
    serializer_class = CountrySerializer
    pagination_class = None

    def get_queryset(self):
        return list_countries()

    def list(self, request, *args, **kwargs):
        return Response({"countries": self.get_serializer(self.get_queryset(), many=True).data})


class SubscriptionCalculateView(PrivateUserViewMixin, APIView):
    """
    POST /api/subscriptions/calculate/
    Pricing preview for a new subscription; nothing is charged or saved.
    """
    def post(self, request, *args, **kwargs):
        body = CalculateRequestSerializer(data=request.data)
        body.is_valid(raise_exception=True)

        quote = quote_for_candidate(
            request.user, body.validated_data["plan_id"], body.validated_data["country_ids"]
        )
        return Response({**QuoteSerializer(quote).data, "currency": default_currency()})


class ClientTokenView(PrivateUserViewMixin, APIView):
    """
    GET /api/subscriptions/client-token/
    Provisions the processor customer and returns the token the client uses to
    collect a single-use payment instrument.
    """
    def get(self, request, *args, **kwargs):
        return Response(issue_client_token(request.user))


class MySubscriptionsView(PrivateUserViewMixin, generics.ListAPIView):
    """
    GET  /api/subscriptions/   the candidate's subscriptions, newest first (?status= to filter)
    POST /api/subscriptions/   buy a new subscription
    """
    serializer_class = SubscriptionSerializer
    pagination_class = SubscriptionPagination

    def get_queryset(self):
        status_filter = (self.request.query_params.get("status") or "").strip().lower() or None
        return list_candidate_subscriptions(self.request.user, status=status_filter)

    def post(self, request, *args, **kwargs):
        body = CreateSubscriptionRequestSerializer(data=request.data)
        body.is_valid(raise_exception=True)
        data = body.validated_data

        subscription = create_subscription(
            request.user,
            data["plan_id"],
            data["country_ids"],
            data["payment_instrument_token"],
        )
        return Response(
            {
                "message": "Subscription created successfully.",
                "subscription": SubscriptionSerializer(subscription).data,
            },
            status=status.HTTP_201_CREATED,
        )


class SubscriptionDetailView(PrivateUserViewMixin, APIView):
    """
    GET    /api/subscriptions/<id>/
    DELETE /api/subscriptions/<id>/   cancel
    """
    def get(self, request, subscription_id, *args, **kwargs):
        subscription = get_subscription_for(request.user, subscription_id)
        return Response(SubscriptionSerializer(subscription).data)

    def delete(self, request, subscription_id, *args, **kwargs):
        subscription = cancel_subscription(subscription_id, request.user)
        return Response({
            "message": "Subscription cancelled.",
            "subscription": SubscriptionSerializer(subscription).data,
        })


class SubscriptionAddCountriesView(PrivateUserViewMixin, APIView):
    """POST /api/subscriptions/<id>/add-countries/"""

    def post(self, request, subscription_id, *args, **kwargs):
        body = AddCountriesRequestSerializer(data=request.data)
        body.is_valid(raise_exception=True)

        subscription, quote = add_countries(
            subscription_id,
            request.user,
            body.validated_data["country_ids"],
            body.validated_data["payment_instrument_token"],
        )
        return Response({
            "message": f"Added {quote.country_count} countries to your subscription.",
            "charge": QuoteSerializer(quote).data,
            "subscription": SubscriptionSerializer(subscription).data,
        })


class SubscriptionCountriesView(PrivateUserViewMixin, APIView):
    """DELETE /api/subscriptions/<id>/countries/  body: {"country_ids": [...]}"""

    def delete(self, request, subscription_id, *args, **kwargs):
        body = RemoveCountriesRequestSerializer(data=request.data)
        body.is_valid(raise_exception=True)

        subscription = remove_countries(subscription_id, request.user, body.validated_data["country_ids"])
        return Response({
            "message": "Countries removed from your subscription.",
            "subscription": SubscriptionSerializer(subscription).data,
        })


class AdminSubscriptionListView(AdminViewMixin, generics.ListAPIView):
    """GET /api/admin/subscriptions/?status=&candidate_id=&plan_id="""
    serializer_class = AdminSubscriptionSerializer
    pagination_class = SubscriptionPagination

    def get_queryset(self):
        params = self.request.query_params
        return list_all_subscriptions(
            status=(params.get("status") or "").strip().lower() or None,
            candidate_id=(params.get("candidate_id") or "").strip() or None,
            plan_id=(params.get("plan_id") or "").strip() or None,
        )


class AdminSubscriptionDetailView(AdminViewMixin, APIView):
    """
    GET    /api/admin/subscriptions/<id>/
    DELETE /api/admin/subscriptions/<id>/   cancel on the candidate's behalf
    """
    def get(self, request, subscription_id, *args, **kwargs):
        return Response(AdminSubscriptionSerializer(get_subscription(subscription_id)).data)

    def delete(self, request, subscription_id, *args, **kwargs):
        subscription = cancel_subscription(subscription_id, request.user, enforce_owner=False)
        return Response({
            "message": "Subscription cancelled.",
            "subscription": AdminSubscriptionSerializer(subscription).data,
        })


class PaymentWebhookView(PublicViewMixin, APIView):
    """
    Receives payment processor webhooks through the modular payment router.
    Authenticated by the processor's signature, never by session or token.
    """
    def post(self, request, provider=None, *args, **kwargs):
        provider = (provider or default_provider()).lower()
        try:
            gateway = get_gateway(provider)
        except ValueError:
            return Response({"error": "Unknown payment provider"}, status=status.HTTP_404_NOT_FOUND)

        signature = request.headers.get(gateway.SIGNATURE_HEADER, "")

        try:
            outcome = handle_webhook(provider, signature, request.body)
        except WebhookVerificationError as exc:
            logger.warning("Rejected %s webhook: %s", provider, exc.message)
            return Response(exc.as_dict(), status=status.HTTP_400_BAD_REQUEST)
        except Exception:
            logger.exception("Failed to process %s webhook", provider)
            return Response({"error": "Webhook processing failed"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        # unmatched and duplicate events are still acknowledged so the processor stops retrying
        return Response({"received": True, "outcome": outcome})

    def get(self, request, *args, **kwargs):
        return Response({"message": "Payment webhook endpoint."})
