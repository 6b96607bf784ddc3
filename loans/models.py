from decimal import Decimal

from django.conf import settings
from django.db import models


class Frequency(models.TextChoices):
    MONTHLY = "Monthly", "Monthly"
    BI_WEEKLY = "Bi-Weekly", "Bi-Weekly"


class Client(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "Active", "Active"
        INACTIVE = "Inactive", "Inactive"

    name = models.CharField(max_length=200)
    email = models.EmailField(unique=True)
    phone = models.CharField(max_length=32, blank=True, default="")
    assigned_staff = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        related_name="assigned_clients",
        on_delete=models.PROTECT,
    )
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.name


class Loan(models.Model):
    class Status(models.TextChoices):
        PENDING_APPROVAL = "Pending Approval", "Pending Approval"
        IN_PROGRESS = "In Progress", "In Progress"
        OVERDUE = "Overdue", "Overdue"
        COMPLETED = "Completed", "Completed"

    client = models.OneToOneField(Client, related_name="loan", on_delete=models.CASCADE)
    loan_amount = models.DecimalField(max_digits=12, decimal_places=2)
    loan_start_date = models.DateField()
    frequency = models.CharField(max_length=10, choices=Frequency.choices, default=Frequency.MONTHLY)
    tenure = models.PositiveIntegerField()
    installment_amount = models.DecimalField(max_digits=17, decimal_places=5)
    total_paid = models.DecimalField(max_digits=17, decimal_places=5, default=Decimal("0"))
    remaining_amount = models.DecimalField(max_digits=17, decimal_places=5)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING_APPROVAL)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def save(self, *args, **kwargs):
        self.remaining_amount = self.loan_amount - self.total_paid
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "remaining_amount" not in update_fields:
            kwargs["update_fields"] = list(update_fields) + ["remaining_amount"]
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"Loan {self.pk}"


class Payment(models.Model):
    class Status(models.TextChoices):
        PENDING = "Pending", "Pending"
        PAID = "Paid", "Paid"
        OVERDUE = "Overdue", "Overdue"

    loan = models.ForeignKey(Loan, related_name="payments", on_delete=models.CASCADE)
    client = models.ForeignKey(Client, related_name="payments", on_delete=models.CASCADE)
    installment_no = models.PositiveIntegerField()
    amount = models.DecimalField(max_digits=17, decimal_places=5)
    due_date = models.DateField()
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.PENDING)
    paid_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["installment_no"]
        unique_together = ("loan", "installment_no")

    def __str__(self) -> str:
        return f"Installment {self.installment_no} for Loan {self.loan_id}"
