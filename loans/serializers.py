from datetime import date
from decimal import Decimal

from django.contrib.auth import get_user_model
from rest_framework import serializers

from .exceptions import ValidationError as LedgerValidationError
from .models import Client, Loan, Payment
from .schedule import parse_frequency
from .services import next_due

DATE_INPUT_FORMATS = ["%Y-%m-%d", "%d-%m-%Y"]


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = ["id", "installment_no", "amount", "due_date", "status", "paid_at"]


class LoanSerializer(serializers.ModelSerializer):
    schedule = PaymentSerializer(source="payments", many=True, read_only=True)

    class Meta:
        model = Loan
        fields = [
            "id",
            "client",
            "loan_amount",
            "loan_start_date",
            "frequency",
            "tenure",
            "installment_amount",
            "total_paid",
            "remaining_amount",
            "status",
            "schedule",
        ]


class ClientSerializer(serializers.ModelSerializer):
    loan = LoanSerializer(read_only=True)
    next_due = serializers.SerializerMethodField()

    class Meta:
        model = Client
        fields = ["id", "name", "email", "phone", "assigned_staff", "status", "loan", "next_due"]

    def get_next_due(self, client: Client):
        loan = Loan.objects.filter(client=client).first()
        if loan is None:
            return None
        value = next_due(loan, loan.payments.all())
        return value.isoformat() if isinstance(value, date) else value


class ClientCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200)
    email = serializers.EmailField()
    phone = serializers.CharField(max_length=32, required=False, allow_blank=True, default="")
    assigned_staff = serializers.PrimaryKeyRelatedField(
        queryset=get_user_model().objects.all(), required=False
    )
    loan_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0.01"))
    loan_start_date = serializers.DateField(input_formats=DATE_INPUT_FORMATS)
    installment_frequency = serializers.CharField(required=False)

    def validate_email(self, value: str) -> str:
        if Client.objects.filter(email__iexact=value).exists():
            raise serializers.ValidationError("Client with this email already exists.")
        return value

    def validate_installment_frequency(self, value: str) -> str:
        try:
            return parse_frequency(value)
        except LedgerValidationError as exc:
            raise serializers.ValidationError(exc.message) from exc


class ClientUpdateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=200, required=False)
    email = serializers.EmailField(required=False)
    phone = serializers.CharField(max_length=32, required=False, allow_blank=True)
    status = serializers.ChoiceField(choices=Client.Status.choices, required=False)
    loan_amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=Decimal("0.01"), required=False
    )
    loan_start_date = serializers.DateField(input_formats=DATE_INPUT_FORMATS, required=False)

    def validate_email(self, value: str) -> str:
        client: Client = self.context["client"]
        if Client.objects.filter(email__iexact=value).exclude(pk=client.pk).exists():
            raise serializers.ValidationError("Client with this email already exists.")
        return value


class ImportSerializer(serializers.Serializer):
    file = serializers.FileField()
