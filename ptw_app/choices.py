from django.db import models


class Status(models.TextChoices):
    DRAFT = 'draft', 'Draft'
    PENDING = 'pending', 'Pending'
    ENGINEERING_REVIEW = 'engineering_review', 'Engineering Review'
    APPROVED = 'approved', 'Approved'
    ACTIVE = 'active', 'Active'
    COMPLETED = 'completed', 'Completed'
    REJECTED = 'rejected', 'Rejected'
    CANCELLED = 'cancelled', 'Cancelled'
    EXPIRED = 'expired', 'Expired'


class Role(models.TextChoices):
    ADMIN = 'admin', 'Admin'
    APPROVER = 'approver', 'Approver'
    REQUESTER = 'requester', 'Requester'
    # internal actor for time-driven and routing transitions, never stored on a User
    SYSTEM = 'system', 'System'


class PermitType(models.TextChoices):
    HOT_WORK = 'Hot Work', 'Hot Work'
    COLD_WORK = 'Cold Work', 'Cold Work'
    ELECTRICAL = 'Electrical', 'Electrical'
    CONFINED_SPACE = 'Confined Space', 'Confined Space'
    WORKING_AT_HEIGHTS = 'Working at Heights', 'Working at Heights'
    MOBILE_CRANE = 'Mobile Crane', 'Mobile Crane'
    EXCAVATION = 'Excavation', 'Excavation'


class RiskLevel(models.TextChoices):
    LOW = 'Low', 'Low'
    MEDIUM = 'Medium', 'Medium'
    HIGH = 'High', 'High'


class Event(models.TextChoices):
    SUBMIT = 'submit', 'Submit for review'
    ROUTE_ENGINEERING = 'route_engineering', 'Route to engineering'
    APPROVE = 'approve', 'Approve'
    REJECT = 'reject', 'Reject'
    APPROVE_ENGINEERING = 'approve_engineering', 'Engineering approve'
    ACTIVATE = 'activate', 'Activate'
    REQUEST_CLOSURE = 'request_closure', 'Request closure'
    APPROVE_CLOSURE = 'approve_closure', 'Approve closure'
    CANCEL = 'cancel', 'Cancel'
    EXPIRE = 'expire', 'Expire'


class CertificateType(models.TextChoices):
    GAS = 'gas', 'Gas Free Certificate'
    EXCAVATION = 'excavation', 'Excavation Certificate'
    CONFINED = 'confined', 'Confined Space Entry Certificate'
    EKED = 'eked', 'Energy Isolation (EKED) Certificate'


WORK_TYPES = ['Sahada', 'Gemide', 'Yüksekte', 'Binada', 'Ateşli', 'Altyapıda', 'Kapalı Mekanda', 'Gece']

OPEN_STATUSES = frozenset({
    Status.DRAFT, Status.PENDING, Status.ENGINEERING_REVIEW, Status.APPROVED, Status.ACTIVE,
})
CLOSED_STATUSES = frozenset({
    Status.COMPLETED, Status.REJECTED, Status.CANCELLED, Status.EXPIRED,
})
