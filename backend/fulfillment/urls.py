from django.urls import path
from .views import (
    ProviderListView,
    RequestAcceptView,
    RequestAssignView,
    RequestBillView,
    RequestCancelView,
    RequestDetailView,
    RequestEditorView,
    RequestListView,
    RequestPaymentConfirmedView,
)

urlpatterns = [
    path('requests/', RequestListView.as_view(), name='request-list'),
    path('requests/<str:request_id>/', RequestDetailView.as_view(), name='request-detail'),
    path('requests/<str:request_id>/accept/', RequestAcceptView.as_view(), name='request-accept'),
    path('requests/<str:request_id>/cancel/', RequestCancelView.as_view(), name='request-cancel'),
    path('requests/<str:request_id>/editor/', RequestEditorView.as_view(), name='request-editor'),
    path('requests/<str:request_id>/bill/', RequestBillView.as_view(), name='request-bill'),
    path('requests/<str:request_id>/payment-confirmed/', RequestPaymentConfirmedView.as_view(), name='request-payment-confirmed'),
    path('requests/<str:request_id>/assign/', RequestAssignView.as_view(), name='request-assign'),
    path('providers/<str:kind>/', ProviderListView.as_view(), name='provider-list'),
]
