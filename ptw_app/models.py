from django.db import models
from django.utils import timezone

from .choices import Status, Role, PermitType, RiskLevel, CertificateType
from .exceptions import PolicyViolation


class User(models.Model):
    email = models.EmailField(unique=True)
    full_name = models.CharField(max_length=255)
    role = models.CharField(max_length=50, choices=Role.choices, default=Role.REQUESTER)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.full_name} ({self.role})"


class Location(models.Model):
    name = models.CharField(max_length=255)
    address = models.TextField(blank=True, default='')
    site_manager = models.CharField(max_length=255, null=True, blank=True)
    is_active = models.BooleanField(default=True)

    def __str__(self):
        return self.name


class Contractor(models.Model):
    name = models.CharField(max_length=255)
    company = models.CharField(max_length=255, blank=True, default='')
    contact_person = models.CharField(max_length=255, blank=True, default='')
    email = models.EmailField(blank=True, default='')
    phone = models.CharField(max_length=50, blank=True, default='')
    certification_number = models.CharField(max_length=100, blank=True, default='')
    certification_expiry = models.DateField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    def __str__(self):
        return self.name


class PermitCounter(models.Model):
    year = models.IntegerField(unique=True)
    last_no = models.IntegerField(default=0)


class Permit(models.Model):
    permit_number = models.CharField(max_length=32, unique=True)
    ptw_type = models.CharField(max_length=50, choices=PermitType.choices)
    ptw_sub_type = models.CharField(max_length=50, blank=True, default='')
    risk_level = models.CharField(max_length=10, choices=RiskLevel.choices)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT, db_index=True)

    description = models.TextField()
    work_area = models.CharField(max_length=255, blank=True, default='')
    work_entity = models.CharField(max_length=255)
    work_types = models.JSONField(default=list, blank=True)
    equipment = models.JSONField(default=list, blank=True)
    location = models.ForeignKey(Location, on_delete=models.PROTECT, related_name='permits')
    contractor = models.ForeignKey(Contractor, on_delete=models.PROTECT, related_name='permits')
    emergency_contact = models.CharField(max_length=100)
    personnel_list = models.JSONField(default=list, blank=True)

    # safety payload
    selected_hazards = models.JSONField(default=list, blank=True)
    selected_precautions = models.JSONField(default=list, blank=True)
    selected_ppe = models.JSONField(default=list, blank=True)
    other_hazards = models.TextField(blank=True, default='')
    other_precautions = models.TextField(blank=True, default='')
    other_ppe = models.TextField(blank=True, default='')
    safety_checklist = models.JSONField(default=list, blank=True)
    required_certificates = models.JSONField(default=list, blank=True)
    site_test_required = models.BooleanField(default=False)

    valid_from = models.DateTimeField()
    valid_until = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)

    # preparation gates
    hazards_identified = models.BooleanField(default=False)
    controls_required = models.BooleanField(default=False)
    ppe_identified = models.BooleanField(default=False)
    equipment_identified = models.BooleanField(default=False)

    affected_dept_approved = models.BooleanField(default=False)
    affected_dept_approved_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    # routing decision taken at submission, lead time measured from submitted_at
    submitted_at = models.DateTimeField(null=True, blank=True)
    engineering_required = models.BooleanField(default=False)
    engineering_approved = models.BooleanField(default=False)
    engineering_approved_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    closure_requested = models.BooleanField(default=False)
    closure_requested_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    closure_approved_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    rejection_reason = models.TextField(blank=True, default='')

    created_by = models.ForeignKey(User, on_delete=models.PROTECT, related_name='permits')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    version = models.PositiveIntegerField(default=1)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.permit_number} - {self.ptw_type} ({self.status})"


class AuditLog(models.Model):
    permit = models.ForeignKey(Permit, null=True, on_delete=models.CASCADE, related_name='audit_logs')
    user = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL)
    action = models.CharField(max_length=64)
    entity_type = models.CharField(max_length=32, default='permit')
    entity_id = models.CharField(max_length=64)
    from_status = models.CharField(max_length=20, blank=True, default='')
    to_status = models.CharField(max_length=20, blank=True, default='')
    details = models.JSONField(default=dict, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['created_at', 'id']


class ChildRecord(models.Model):
    """Append-only record owned by a permit; rows are never edited once written."""

    permit = models.ForeignKey(Permit, on_delete=models.CASCADE, related_name='%(class)ss')
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        abstract = True
        ordering = ['created_at', 'id']

    def save(self, *args, **kwargs):
        if self.pk is not None and not self._state.adding:
            raise PolicyViolation('immutable_record', f"{self._meta.verbose_name} records cannot be edited")
        super().save(*args, **kwargs)

    def summary(self):
        return {'id': self.pk}


class GasTestRecord(ChildRecord):
    test_time = models.DateTimeField()
    oxygen = models.DecimalField(max_digits=5, decimal_places=2)
    co2 = models.DecimalField(max_digits=7, decimal_places=2, null=True, blank=True)
    lel = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    toxic = models.DecimalField(max_digits=7, decimal_places=2, null=True, blank=True)
    co = models.DecimalField(max_digits=7, decimal_places=2, null=True, blank=True)
    tested_by = models.CharField(max_length=255)

    @property
    def oxygen_in_range(self):
        return 19.5 <= float(self.oxygen) <= 23.5

    def summary(self):
        return {'id': self.pk, 'oxygen': str(self.oxygen), 'tested_by': self.tested_by,
                'oxygen_in_range': self.oxygen_in_range}


class DailyChecklist(ChildRecord):
    checked_by_name = models.CharField(max_length=255)
    is_safe = models.BooleanField(default=True)
    comments = models.TextField(blank=True, default='')

    def summary(self):
        return {'id': self.pk, 'checked_by_name': self.checked_by_name, 'is_safe': self.is_safe}


class Handover(ChildRecord):
    outgoing_issuer_name = models.CharField(max_length=255)
    incoming_issuer_name = models.CharField(max_length=255)
    outgoing_signature_url = models.CharField(max_length=500)
    incoming_signature_url = models.CharField(max_length=500)
    notes = models.TextField(blank=True, default='')

    def summary(self):
        return {'id': self.pk, 'from': self.outgoing_issuer_name, 'to': self.incoming_issuer_name}


class Certificate(ChildRecord):
    certificate_type = models.CharField(max_length=20, choices=CertificateType.choices)
    certificate_no = models.CharField(max_length=100, blank=True, default='')
    holder_name = models.CharField(max_length=255)
    issue_date = models.DateField()
    expiry_date = models.DateField(null=True, blank=True)
    issuing_authority = models.CharField(max_length=255, blank=True, default='')
    notes = models.TextField(blank=True, default='')

    def summary(self):
        return {'id': self.pk, 'certificate_type': self.certificate_type, 'holder_name': self.holder_name}


class Signature(ChildRecord):
    role = models.CharField(max_length=50)
    signer_name = models.CharField(max_length=255)
    signature_url = models.TextField()
    signed_at = models.DateTimeField(default=timezone.now)

    def summary(self):
        return {'id': self.pk, 'role': self.role, 'signer_name': self.signer_name}


class PermitDocument(ChildRecord):
    name = models.CharField(max_length=255)
    doc_type = models.CharField(max_length=50, blank=True, default='other')
    file_url = models.CharField(max_length=500)

    def summary(self):
        return {'id': self.pk, 'name': self.name, 'doc_type': self.doc_type}
