from django.urls import path
from .views import (
    AdminSubscriptionDetailView,
    AdminSubscriptionListView,
    ClientTokenView,
    CountryListView,
    MySubscriptionsView,
    PaymentWebhookView,
    PlanListView,
    SubscriptionAddCountriesView,
    SubscriptionCalculateView,
    SubscriptionCountriesView,
    SubscriptionDetailView,
)

urlpatterns = [
    path("api/plans/", PlanListView.as_view(), name="sub_plans"),
    path("api/countries/", CountryListView.as_view(), name="sub_countries"),
    path("api/subscriptions/calculate/", SubscriptionCalculateView.as_view(), name="subscription_calculate"),
    path("api/subscriptions/client-token/", ClientTokenView.as_view(), name="subscription_client_token"),
    path("api/subscriptions/", MySubscriptionsView.as_view(), name="my_subscriptions"),
    path("api/subscriptions/<uuid:subscription_id>/", SubscriptionDetailView.as_view(), name="subscription_detail"),
    path(
        "api/subscriptions/<uuid:subscription_id>/add-countries/",
        SubscriptionAddCountriesView.as_view(),
        name="subscription_add_countries",
    ),
    path(
        "api/subscriptions/<uuid:subscription_id>/countries/",
        SubscriptionCountriesView.as_view(),
        name="subscription_countries",
    ),
    path("api/admin/subscriptions/", AdminSubscriptionListView.as_view(), name="admin_subscriptions"),
    path(
        "api/admin/subscriptions/<uuid:subscription_id>/",
        AdminSubscriptionDetailView.as_view(),
        name="admin_subscription_detail",
    ),
    path("payments/webhook/", PaymentWebhookView.as_view(), name="payment_webhook"),
    path("payments/webhook/<str:provider>/", PaymentWebhookView.as_view(), name="payment_webhook_provider"),
]
