from django.urls import path
from . import views

app_name = "billing"

urlpatterns = [
    path("stripe-status/", views.stripe_status, name="stripe_status"),
    path("stripe-webhook/", views.stripe_webhook, name="stripe_webhook"),
    path("wallet-recharge/", views.create_wallet_recharge, name="wallet_recharge"),
    path("call-webhook/", views.call_webhook, name="call_webhook"),
    path("recalculate-charge/", views.recalculate_charge, name="recalculate_charge"),
]
