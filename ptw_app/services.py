"""
Permit record operations.

Each public method is one atomic unit of work against the database. Status
changes are committed with a compare-and-swap on ``(status, version)`` so two
actors racing on the same permit cannot both win; the loser gets a
ConflictError. Events are handed to the publisher only after commit.
"""
import logging

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .choices import Status, Role, Event, CLOSED_STATUSES
from .events import PermitEvent, relay
from .exceptions import ValidationError, NotFound, Forbidden, PolicyViolation, InvalidTransition, ConflictError
from .forms import PermitCreateForm, PermitUpdateForm, CHILD_FORMS
from .models import Permit, PermitCounter, AuditLog, User
from .workflow import (
    Actor, SYSTEM_ACTOR, PREPARATION_GATES, evaluate, legal_events, event_for_status,
    site_test_mandatory,
)

logger = logging.getLogger(__name__)

CONTENT_FIELDS = frozenset({
    'ptw_type', 'ptw_sub_type', 'risk_level', 'description', 'work_area', 'work_entity',
    'work_types', 'equipment', 'location', 'contractor', 'emergency_contact', 'personnel_list',
    'selected_hazards', 'selected_precautions', 'selected_ppe', 'other_hazards',
    'other_precautions', 'other_ppe', 'safety_checklist', 'required_certificates',
    'site_test_required',
})
WINDOW_FIELDS = frozenset({'valid_from', 'valid_until'})
GATE_FIELDS = frozenset(PREPARATION_GATES)
ADMIN_FIELDS = frozenset({'affected_dept_approved'})
EDITABLE_FIELDS = CONTENT_FIELDS | WINDOW_FIELDS | GATE_FIELDS | ADMIN_FIELDS

CONTENT_STATUSES = frozenset({Status.DRAFT, Status.PENDING})
WINDOW_STATUSES = frozenset({Status.DRAFT, Status.PENDING, Status.ENGINEERING_REVIEW, Status.APPROVED})
ADMIN_STATUSES = frozenset({Status.PENDING, Status.ENGINEERING_REVIEW, Status.APPROVED, Status.ACTIVE})

# kinds that make no sense once the permit is closed
PRE_CLOSURE_KINDS = frozenset({'gas_tests', 'checklists', 'certificates'})
HANDOVER_STATUSES = frozenset({Status.APPROVED, Status.ACTIVE})


def form_errors(form):
    return {field: [str(message) for message in messages] for field, messages in form.errors.items()}


def resolve_actor(user_id):
    """Turn the caller-supplied user id into an Actor; unknown or inactive users are refused."""
    if not user_id:
        raise Forbidden("an acting user is required")
    try:
        user = User.objects.get(pk=user_id, is_active=True)
    except (User.DoesNotExist, ValueError, TypeError):
        raise Forbidden(f"unknown or inactive user '{user_id}'")
    return Actor.from_user(user)


def next_permit_number(year, prefix='PTW'):
    """PTW-YYYY-NNNNN, sequential per calendar year. Must run inside a transaction."""
    counter, _ = PermitCounter.objects.select_for_update().get_or_create(year=year)
    counter.last_no += 1
    counter.save(update_fields=['last_no'])
    return f"{prefix}-{year}-{counter.last_no:05d}"


class PermitService:
    def __init__(self, publisher=None, clock=timezone.now):
        self.publisher = publisher if publisher is not None else relay
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, permit_id):
        try:
            return Permit.objects.select_related('location', 'contractor', 'created_by').get(pk=permit_id)
        except (Permit.DoesNotExist, ValueError, TypeError):
            raise NotFound(f"permit {permit_id} not found", {'permit_id': permit_id})

    def list(self, status=None, ptw_type=None, risk_level=None, search=None):
        permits = Permit.objects.select_related('location', 'contractor', 'created_by')
        if status and status != 'all':
            permits = permits.filter(status=status)
        if ptw_type and ptw_type != 'all':
            permits = permits.filter(ptw_type=ptw_type)
        if risk_level and risk_level != 'all':
            permits = permits.filter(risk_level=risk_level)
        if search:
            permits = permits.filter(
                Q(permit_number__icontains=search) |
                Q(description__icontains=search) |
                Q(work_entity__icontains=search) |
                Q(location__name__icontains=search) |
                Q(contractor__name__icontains=search)
            )
        return permits

    def actions(self, permit_id, actor):
        return legal_events(self.get(permit_id), actor, self.clock())

    def children(self, permit_id, kind):
        model = self._child_form(kind)._meta.model
        return list(model.objects.filter(permit=self.get(permit_id)))

    def audit_trail(self, permit_id):
        return list(AuditLog.objects.filter(permit=self.get(permit_id)).select_related('user'))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def create(self, data, actor, ip_address=None):
        self._require_user(actor)
        form = PermitCreateForm(data)
        if not form.is_valid():
            raise ValidationError("invalid permit data", form_errors(form))

        now = self.clock()
        with transaction.atomic():
            permit = Permit(status=Status.DRAFT, created_by_id=actor.user_id, **form.cleaned_data)
            permit.permit_number = next_permit_number(now.year, self._prefix())
            permit.save()
            self._audit(permit, actor, 'permit.created', '', Status.DRAFT,
                        {'permit_number': permit.permit_number}, ip_address)
            self._publish('permit.created', permit,
                          {'permit_number': permit.permit_number, 'ptw_type': permit.ptw_type,
                           'status': permit.status})
        logger.info("Created permit %s (%s) for user %s", permit.permit_number, permit.ptw_type, actor.user_id)
        return permit

    def update(self, permit_id, fields, actor, ip_address=None):
        fields = dict(fields)
        target_status = fields.pop('status', None)
        expected_version = fields.pop('version', None)
        reason = fields.pop('reason', None)
        reason = fields.pop('rejection_reason', None) or reason

        unknown = sorted(set(fields) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError("unknown or read-only fields", {name: ["This field cannot be updated."] for name in unknown})

        with transaction.atomic():
            permit = self.get(permit_id)
            self._check_version(permit, expected_version)
            self._check_edit_rights(permit, actor)
            if fields:
                self._check_locks(permit, fields, actor)
                form = PermitUpdateForm(fields, instance=permit)
                if not form.is_valid():
                    raise ValidationError("invalid permit data", form_errors(form))
                changes = dict(form.cleaned_data)
                ptw_type = changes.get('ptw_type', permit.ptw_type)
                work_types = changes.get('work_types', permit.work_types)
                if site_test_mandatory(ptw_type, work_types):
                    changes['site_test_required'] = True
                if 'affected_dept_approved' in changes:
                    changes['affected_dept_approved_by_id'] = actor.user_id if changes['affected_dept_approved'] else None
                status = permit.status
                self._commit(permit, changes)
                self._audit(permit, actor, 'permit.updated', status, status,
                            {'fields': sorted(fields)}, ip_address)
                self._publish('permit.updated', permit, {'fields': sorted(fields), 'status': status})

            if target_status is not None and target_status != permit.status:
                event = event_for_status(permit, target_status, actor, self.clock())
                if event is None:
                    raise InvalidTransition(
                        f"cannot move permit from '{permit.status}' to '{target_status}'",
                        {'status': permit.status, 'requested': target_status})
                permit = self.transition(permit.pk, event, actor, {'reason': reason}, ip_address=ip_address)
        return permit

    def transition(self, permit_id, event, actor, payload=None, expected_version=None, ip_address=None):
        with transaction.atomic():
            permit = self.get(permit_id)
            self._check_version(permit, expected_version)
            now = self.clock()
            decision = evaluate(permit, event, actor, payload or {}, now)
            self._apply(permit, decision, actor, ip_address)

            if decision.event == Event.SUBMIT and permit.engineering_required:
                routed = evaluate(permit, Event.ROUTE_ENGINEERING, SYSTEM_ACTOR, {}, now)
                self._apply(permit, routed, SYSTEM_ACTOR, ip_address)
        return permit

    def attach_child(self, permit_id, kind, payload, actor, ip_address=None):
        form_class = self._child_form(kind)
        self._require_user(actor)
        with transaction.atomic():
            permit = self.get(permit_id)
            self._check_edit_rights(permit, actor)
            if kind in PRE_CLOSURE_KINDS and permit.status in CLOSED_STATUSES:
                raise PolicyViolation('permit_closed',
                                      f"cannot add {kind.replace('_', ' ')} to a {permit.status} permit",
                                      {'kind': kind, 'status': permit.status})
            if kind == 'handovers' and permit.status not in HANDOVER_STATUSES:
                raise PolicyViolation('permit_not_running',
                                      "handovers are only recorded for approved or active permits",
                                      {'kind': kind, 'status': permit.status})

            form = form_class(payload)
            if not form.is_valid():
                raise ValidationError(f"invalid {kind.replace('_', ' ')} record", form_errors(form))
            record = form.save(commit=False)
            record.permit = permit
            record.created_at = self.clock()
            record.save()

            self._audit(permit, actor, 'child.created', permit.status, permit.status,
                        {'kind': kind, 'id': record.pk}, ip_address,
                        entity_type=kind, entity_id=record.pk)
            self._publish('permit.child_added', permit, dict(record.summary(), kind=kind))
        logger.info("Added %s record %s to permit %s", kind, record.pk, permit.permit_number)
        return record

    def expire_overdue(self, now=None):
        """Move running permits whose validity window has ended to ``expired``."""
        now = now or self.clock()
        expired = []
        overdue = Permit.objects.filter(status__in=[Status.ACTIVE, Status.APPROVED], valid_until__lte=now)
        for permit_id in overdue.values_list('pk', flat=True):
            try:
                expired.append(self.transition(permit_id, Event.EXPIRE, SYSTEM_ACTOR))
            except (ConflictError, PolicyViolation) as exc:
                logger.warning("Skipped expiring permit %s: %s", permit_id, exc)
        return expired

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _prefix(self):
        return getattr(settings, 'PTW_PERMIT_PREFIX', 'PTW')

    def _child_form(self, kind):
        try:
            return CHILD_FORMS[kind]
        except KeyError:
            raise ValidationError(f"unknown record kind '{kind}'", {'kind': sorted(CHILD_FORMS)})

    def _require_user(self, actor):
        if actor.user_id is None or actor.role == Role.SYSTEM:
            raise Forbidden("this operation needs a signed-in user")

    def _check_version(self, permit, expected_version):
        if expected_version in (None, ''):
            return
        try:
            expected_version = int(expected_version)
        except (TypeError, ValueError):
            raise ValidationError("version must be an integer", {'version': [str(expected_version)]})
        if expected_version != permit.version:
            raise ConflictError(
                f"permit {permit.permit_number} has changed (version {permit.version}); reload and retry",
                {'expected_version': expected_version, 'version': permit.version})

    def _check_edit_rights(self, permit, actor):
        self._require_user(actor)
        if actor.role == Role.REQUESTER and permit.created_by_id != actor.user_id:
            raise Forbidden("requesters may only change their own permits")

    def _check_locks(self, permit, fields, actor):
        if permit.status in CLOSED_STATUSES:
            raise PolicyViolation('permit_closed', f"a {permit.status} permit cannot be edited")
        locked = []
        for name in fields:
            if name in CONTENT_FIELDS and permit.status not in CONTENT_STATUSES:
                locked.append(name)
            elif name in WINDOW_FIELDS and permit.status not in WINDOW_STATUSES:
                locked.append(name)
            elif name in GATE_FIELDS and permit.status != Status.DRAFT:
                locked.append(name)
            elif name in ADMIN_FIELDS:
                if actor.role != Role.ADMIN:
                    raise Forbidden(f"only admins may set {name}")
                if permit.status not in ADMIN_STATUSES:
                    locked.append(name)
        if locked:
            raise PolicyViolation('field_locked',
                                  f"fields locked while permit is {permit.status}: {', '.join(sorted(locked))}",
                                  {'fields': sorted(locked)})

    def _commit(self, permit, changes):
        changes = dict(changes, version=permit.version + 1, updated_at=self.clock())
        updated = Permit.objects.filter(
            pk=permit.pk, status=permit.status, version=permit.version,
        ).update(**changes)
        if not updated:
            logger.warning("Concurrent modification of permit %s lost the race", permit.permit_number)
            raise ConflictError(f"permit {permit.permit_number} was modified concurrently; reload and retry",
                                {'permit_id': permit.pk})
        for name, value in changes.items():
            setattr(permit, name, value)

    def _apply(self, permit, decision, actor, ip_address):
        changes = dict(decision.changes, status=decision.target)
        self._commit(permit, changes)
        details = {'event': decision.event.value}
        if permit.rejection_reason and decision.target == Status.REJECTED:
            details['reason'] = permit.rejection_reason
        self._audit(permit, actor, f'permit.{decision.event.value}', decision.source, decision.target,
                    details, ip_address)
        self._publish(f'permit.{decision.event.value}', permit,
                      {'from': decision.source, 'status': decision.target,
                       'closure_requested': permit.closure_requested})
        logger.info("Permit %s: %s %s -> %s by %s", permit.permit_number, decision.event.value,
                    decision.source, decision.target, actor.role)

    def _audit(self, permit, actor, action, from_status, to_status, details, ip_address,
               entity_type='permit', entity_id=None):
        return AuditLog.objects.create(
            permit=permit,
            user_id=actor.user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id if entity_id is not None else permit.pk),
            from_status=from_status,
            to_status=to_status,
            details=details,
            ip_address=ip_address,
            created_at=self.clock(),
        )

    def _publish(self, name, permit, payload):
        event = PermitEvent(name, permit.pk, payload, self.clock())
        transaction.on_commit(lambda: self._deliver(event))

    def _deliver(self, event):
        try:
            self.publisher.publish(event)
        except Exception:
            logger.warning("Dropped event %s for permit %s", event.name, event.permit_id, exc_info=True)
