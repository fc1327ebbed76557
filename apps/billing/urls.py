from django.urls import path
from .views import WalletView, EstimateView, ActivateView, TopUpView, PaymentCallbackView

urlpatterns = [
    path("wallet/", WalletView.as_view(), name="billing-wallet"),
    path("estimate/", EstimateView.as_view(), name="billing-estimate"),
    path("activate/<str:survey_id>/", ActivateView.as_view(), name="billing-activate"),
    path("topup/", TopUpView.as_view(), name="billing-topup"),
    path("payments/callback/", PaymentCallbackView.as_view(), name="payment-callback"),
]
