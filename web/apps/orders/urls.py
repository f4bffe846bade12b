from django.urls import path
from .views import OrdersPingView
from .views import OrdersCollectionView, RetrieveOrderView, OrderTransitionView
app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST initialize
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/confirm/", OrderTransitionView.as_view(transition="confirm"), name="orders-confirm"),
    path("<uuid:oid>/abort/", OrderTransitionView.as_view(transition="abort"), name="orders-abort"),
    path("<uuid:oid>/pay/", OrderTransitionView.as_view(transition="pay"), name="orders-pay"),
]
