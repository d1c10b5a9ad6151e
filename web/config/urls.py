from django.urls import include, path

urlpatterns = [
    path("api/orders/", include("apps.orders.urls")),
    path("api/payments/", include("apps.orders.payment_urls")),
    path("api/", include("apps.monitoring.urls")),
]
