"""
Permit workflow policy.

The whole transition table lives here. Functions in this module only look at
a permit snapshot (a ``Permit`` instance or anything exposing the same
attributes), the acting ``Actor`` and the event payload; they never touch the
database. ``PermitService`` applies the returned ``Decision``.
"""
from collections import namedtuple
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from .choices import Status, Role, Event, PermitType, OPEN_STATUSES
from .exceptions import Forbidden, InvalidTransition, PolicyViolation, ValidationError, PermitError


@dataclass(frozen=True)
class Actor:
    user_id: int = None
    role: str = Role.REQUESTER

    @classmethod
    def from_user(cls, user):
        return cls(user_id=user.pk, role=user.role)


SYSTEM_ACTOR = Actor(user_id=None, role=Role.SYSTEM)

Decision = namedtuple('Decision', 'event source target changes')


@dataclass(frozen=True)
class Rule:
    sources: frozenset
    roles: frozenset
    creator_allowed: bool = False


RULES = {
    Event.SUBMIT: Rule(frozenset({Status.DRAFT}), frozenset({Role.ADMIN}), creator_allowed=True),
    Event.ROUTE_ENGINEERING: Rule(frozenset({Status.PENDING}), frozenset({Role.SYSTEM, Role.ADMIN})),
    Event.APPROVE: Rule(frozenset({Status.PENDING}), frozenset({Role.APPROVER, Role.ADMIN})),
    Event.REJECT: Rule(frozenset({Status.PENDING}), frozenset({Role.APPROVER, Role.ADMIN})),
    Event.APPROVE_ENGINEERING: Rule(frozenset({Status.ENGINEERING_REVIEW}), frozenset({Role.ADMIN})),
    Event.ACTIVATE: Rule(frozenset({Status.APPROVED}), frozenset({Role.APPROVER, Role.ADMIN, Role.SYSTEM})),
    Event.REQUEST_CLOSURE: Rule(frozenset({Status.ACTIVE, Status.APPROVED}), frozenset({Role.APPROVER, Role.ADMIN})),
    Event.APPROVE_CLOSURE: Rule(frozenset({Status.ACTIVE, Status.APPROVED}), frozenset({Role.ADMIN})),
    Event.CANCEL: Rule(OPEN_STATUSES, frozenset({Role.APPROVER, Role.ADMIN}), creator_allowed=True),
    Event.EXPIRE: Rule(frozenset({Status.ACTIVE, Status.APPROVED}), frozenset({Role.SYSTEM, Role.ADMIN})),
}

PREPARATION_GATES = ('hazards_identified', 'controls_required', 'ppe_identified', 'equipment_identified')

SITE_TEST_TYPES = frozenset({PermitType.CONFINED_SPACE, PermitType.HOT_WORK})
SITE_TEST_WORK_TYPES = ('Kapalı Mekanda', 'Ateşli')

MANDATORY_CHECKLISTS = {
    PermitType.WORKING_AT_HEIGHTS: [
        'Emniyet kemeri ve lanyarda hasar kontrolü yapıldı mı?',
        'Yaşam hattı bağlantı noktaları güvenli mi?',
        'Hava hızı 35 km/s altında mı?',
        'Alt alan emniyet şeridi ile kapatıldı mı?',
    ],
    PermitType.HOT_WORK: [
        'Yangın tüpü/battaniyesi hazır mı?',
        'Yanıcı maddeler 10m uzağa taşındı mı?',
        'Kaynak makinesi şasesi uygun yapıldı mı?',
        'Sürekli gaz ölçümü yapılacak mı?',
    ],
    PermitType.CONFINED_SPACE: [
        'Atmosferik ölçüm yapıldı (Oksijen %19.5-23.5)?',
        'Gözlemci (Watchman) kapıda bekliyor mu?',
        'Haberleşme cihazları test edildi mi?',
        'Giriş/Çıkış kayıt defteri oluşturuldu mu?',
    ],
}


def engineering_types():
    return set(getattr(settings, 'PTW_ENGINEERING_TYPES', [PermitType.MOBILE_CRANE]))


def engineering_notice():
    return timedelta(days=getattr(settings, 'PTW_ENGINEERING_NOTICE_DAYS', 3))


def site_test_mandatory(ptw_type, work_types=None):
    """Hot work and confined space entry always need an on-site atmospheric test."""
    if ptw_type in SITE_TEST_TYPES:
        return True
    if not isinstance(work_types, (list, tuple)):
        return False
    return any(marker in str(work_type) for work_type in work_types for marker in SITE_TEST_WORK_TYPES)


def mandatory_checklist(ptw_type):
    return list(MANDATORY_CHECKLISTS.get(ptw_type, []))


def requires_engineering_review(permit, now):
    """Short-notice work of an engineering type; lead time counts from submission once submitted."""
    if permit.ptw_type not in engineering_types():
        return False
    return permit.valid_from - (permit.submitted_at or now) < engineering_notice()


def engineering_review_outstanding(permit):
    return permit.engineering_required and not permit.engineering_approved


def missing_gates(permit):
    return [gate for gate in PREPARATION_GATES if not getattr(permit, gate)]


def effective_status(permit, now):
    """Stored status, or ``expired`` for a running permit whose window has passed."""
    if permit.status in (Status.ACTIVE, Status.APPROVED) and permit.valid_until <= now:
        return Status.EXPIRED
    return permit.status


def is_live(permit, now):
    if permit.status != Status.ACTIVE or permit.valid_until <= now:
        return False
    if not permit.affected_dept_approved:
        return False
    ticked = set(permit.safety_checklist or [])
    return all(item in ticked for item in mandatory_checklist(permit.ptw_type))


def _authorize(permit, rule, event, actor):
    if actor.role in rule.roles:
        return
    if rule.creator_allowed and actor.user_id is not None and actor.user_id == permit.created_by_id:
        return
    raise Forbidden(f"role '{actor.role}' may not {event.replace('_', ' ')} this permit",
                    {'event': event, 'role': actor.role})


def _check_guards(permit, event, now):
    if event == Event.SUBMIT:
        missing = missing_gates(permit)
        if missing:
            raise PolicyViolation('preparation_incomplete',
                                  "preparation incomplete: " + ', '.join(missing), {'missing': missing})
    elif event == Event.ROUTE_ENGINEERING:
        if permit.engineering_approved or not requires_engineering_review(permit, now):
            raise PolicyViolation('engineering_not_required', "permit does not need engineering review")
    elif event == Event.APPROVE:
        if engineering_review_outstanding(permit):
            raise PolicyViolation('engineering_review_required',
                                  f"{permit.ptw_type} work needs engineering approval before issue")
    elif event == Event.ACTIVATE:
        if permit.valid_from > now:
            raise PolicyViolation('not_yet_valid', "validity window has not started")
    elif event == Event.REQUEST_CLOSURE:
        if permit.closure_requested:
            raise PolicyViolation('closure_already_requested', "closure already requested")
    elif event == Event.APPROVE_CLOSURE:
        if not permit.closure_requested:
            raise PolicyViolation('closure_not_requested', "closure has not been requested")
    elif event == Event.EXPIRE:
        if permit.valid_until > now:
            raise PolicyViolation('not_expired', "validity window has not ended")


def _rule_for(permit, event):
    if event not in RULES:
        raise InvalidTransition(f"unknown event '{event}'", {'event': event})
    rule = RULES[event]
    if permit.status not in rule.sources:
        raise InvalidTransition(f"cannot {event.replace('_', ' ')} a permit in status '{permit.status}'",
                                {'event': event, 'status': permit.status})
    return rule


def _target(permit, event, actor, payload, now):
    if event == Event.SUBMIT:
        return Status.PENDING, {'submitted_at': now,
                                'engineering_required': requires_engineering_review(permit, now)}
    if event == Event.ROUTE_ENGINEERING:
        return Status.ENGINEERING_REVIEW, {'engineering_required': True}
    if event == Event.APPROVE:
        return (Status.ACTIVE if permit.valid_from <= now else Status.APPROVED), {}
    if event == Event.REJECT:
        reason = (payload.get('reason') or '').strip()
        if not reason:
            raise ValidationError("missing rejection reason", {'reason': ['A rejection reason is required.']})
        return Status.REJECTED, {'rejection_reason': reason}
    if event == Event.APPROVE_ENGINEERING:
        return Status.PENDING, {'engineering_approved': True, 'engineering_approved_by_id': actor.user_id}
    if event == Event.ACTIVATE:
        return Status.ACTIVE, {}
    if event == Event.REQUEST_CLOSURE:
        return permit.status, {'closure_requested': True, 'closure_requested_by_id': actor.user_id}
    if event == Event.APPROVE_CLOSURE:
        return Status.COMPLETED, {'closure_approved_by_id': actor.user_id, 'completed_at': now}
    if event == Event.CANCEL:
        return Status.CANCELLED, {}
    return Status.EXPIRED, {}


def evaluate(permit, event, actor, payload=None, now=None):
    """
    Decide the outcome of ``event`` on ``permit`` for ``actor``.

    Raises InvalidTransition when the event is not defined for the current
    status, Forbidden when the actor's role is insufficient, PolicyViolation
    when a guard fails and ValidationError for a bad payload.
    """
    now = now or timezone.now()
    rule = _rule_for(permit, event)
    _authorize(permit, rule, event, actor)
    _check_guards(permit, event, now)
    target, changes = _target(permit, event, actor, payload or {}, now)
    return Decision(Event(event), permit.status, target, changes)


def legal_events(permit, actor, now):
    """Events the actor may trigger right now, ignoring payload requirements."""
    events = []
    for event in RULES:
        try:
            rule = _rule_for(permit, event)
            _authorize(permit, rule, event, actor)
            _check_guards(permit, event, now)
        except PermitError:
            continue
        events.append(event.value)
    return events


def event_for_status(permit, target_status, actor, now):
    """First legal event leading from the current status to ``target_status``."""
    for event in legal_events(permit, actor, now):
        if event == Event.REJECT and target_status == Status.REJECTED:
            return event
        try:
            target, _ = _target(permit, event, actor, {}, now)
        except ValidationError:
            continue
        if target == target_status and target != permit.status:
            return event
    return None
