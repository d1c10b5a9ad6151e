from django.urls import path
from .views import OrdersPingView, OrdersCollectionView, RetrieveOrderView, OrderStatusView
app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("<str:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),  # UUID or order number
    path("<str:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
]
