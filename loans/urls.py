from django.urls import path

from .views import (
    ClientDetailView,
    ClientListCreateView,
    ImportTemplateView,
    ImportView,
    LoanDetailView,
    PaymentRecordView,
)

urlpatterns = [
    path("clients/", ClientListCreateView.as_view(), name="client-list"),
    path("clients/<int:pk>/", ClientDetailView.as_view(), name="client-detail"),
    path("loans/<int:pk>/", LoanDetailView.as_view(), name="loan-detail"),
    path("payments/<int:pk>/pay/", PaymentRecordView.as_view(), name="payment-pay"),
    path("import/", ImportView.as_view(), name="import-excel"),
    path("import/template/", ImportTemplateView.as_view(), name="import-template"),
]
