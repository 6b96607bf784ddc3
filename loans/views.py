from django.http import HttpResponse
from django.shortcuts import get_object_or_404
from rest_framework import generics, status
from rest_framework.parsers import MultiPartParser
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from .importer import build_template, import_workbook
from .models import Client, Loan, Payment
from .permissions import IsAdmin, IsAssignedStaffOrAdmin, is_admin
from .serializers import (
    ClientCreateSerializer,
    ClientSerializer,
    ClientUpdateSerializer,
    ImportSerializer,
    LoanSerializer,
    PaymentSerializer,
)
from .services import delete_client, onboard_client, record_payment, update_client

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class ClientListCreateView(generics.ListCreateAPIView):
    permission_classes = [IsAuthenticated]

    def get_serializer_class(self):
        if self.request.method == "POST":
            return ClientCreateSerializer
        return ClientSerializer

    def get_queryset(self):
        queryset = Client.objects.select_related("loan")
        if not is_admin(self.request.user):
            queryset = queryset.filter(assigned_staff=self.request.user)
        return queryset

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        loan = onboard_client(
            name=data["name"],
            email=data["email"],
            phone=data.get("phone", ""),
            assigned_staff=data.get("assigned_staff") or request.user,
            loan_amount=data["loan_amount"],
            loan_start_date=data["loan_start_date"],
            frequency=data.get("installment_frequency"),
        )
        return Response(
            {
                "message": "Client created successfully with loan and payment schedule",
                "client": ClientSerializer(loan.client).data,
                "loan": LoanSerializer(loan).data,
            },
            status=status.HTTP_201_CREATED,
        )


class ClientDetailView(generics.RetrieveUpdateDestroyAPIView):
    serializer_class = ClientSerializer
    permission_classes = [IsAuthenticated, IsAssignedStaffOrAdmin]
    queryset = Client.objects.all()

    def get_permissions(self):
        if self.request.method == "DELETE":
            return [IsAuthenticated(), IsAdmin()]
        return super().get_permissions()

    def update(self, request, *args, **kwargs):
        client = self.get_object()
        serializer = ClientUpdateSerializer(
            data=request.data, partial=kwargs.get("partial", False), context={"client": client}
        )
        serializer.is_valid(raise_exception=True)
        update_client(client, **serializer.validated_data)
        client.refresh_from_db()
        return Response(
            {"message": "Client updated successfully", "client": ClientSerializer(client).data},
            status=status.HTTP_200_OK,
        )

    def destroy(self, request, *args, **kwargs):
        delete_client(self.get_object())
        return Response(
            {"message": "Client and associated data deleted successfully"},
            status=status.HTTP_200_OK,
        )


class LoanDetailView(generics.RetrieveAPIView):
    serializer_class = LoanSerializer
    permission_classes = [IsAuthenticated, IsAssignedStaffOrAdmin]
    queryset = Loan.objects.select_related("client")


class PaymentRecordView(generics.GenericAPIView):
    serializer_class = PaymentSerializer
    permission_classes = [IsAuthenticated, IsAssignedStaffOrAdmin]

    def post(self, request, pk: int, *args, **kwargs):
        payment = get_object_or_404(Payment.objects.select_related("client"), pk=pk)
        self.check_object_permissions(request, payment)
        payment = record_payment(payment.pk)
        return Response(
            {
                "payment": PaymentSerializer(payment).data,
                "loan": LoanSerializer(Loan.objects.get(pk=payment.loan_id)).data,
            },
            status=status.HTTP_200_OK,
        )


class ImportView(generics.GenericAPIView):
    serializer_class = ImportSerializer
    permission_classes = [IsAuthenticated, IsAdmin]
    parser_classes = [MultiPartParser]

    def post(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        report = import_workbook(serializer.validated_data["file"], request.user)
        return Response(report.as_dict(), status=status.HTTP_200_OK)


class ImportTemplateView(generics.GenericAPIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        response = HttpResponse(build_template(), content_type=XLSX_CONTENT_TYPE)
        response["Content-Disposition"] = 'attachment; filename="Loan_Import_Template.xlsx"'
        return response
