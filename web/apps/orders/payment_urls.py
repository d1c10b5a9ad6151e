from django.urls import path
from .views import PaymentPreferenceView, PaymentWebhookView
app_name = "payments"

urlpatterns = [
    path("preference/", PaymentPreferenceView.as_view(), name="preference"),
    path("webhook/", PaymentWebhookView.as_view(), name="webhook"),
]
