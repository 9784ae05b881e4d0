import json
from datetime import timedelta
from io import BytesIO, StringIO
from unittest import mock

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from openpyxl import load_workbook

from ptw_app.analytics import dashboard_stats, analytics_summary
from ptw_app.choices import Status, Role, Event, PermitType
from ptw_app.events import NullPublisher, relay
from ptw_app.exceptions import (
    ValidationError, Forbidden, NotFound, PolicyViolation, InvalidTransition, ConflictError, ExportError,
)
from ptw_app.exports import parse_json_list, render_excel, render_pdf, render_csv
from ptw_app.models import User, Location, Contractor, Permit, AuditLog, GasTestRecord, DailyChecklist
from ptw_app.services import PermitService
from ptw_app.workflow import (
    Actor, SYSTEM_ACTOR, evaluate, legal_events, effective_status, is_live, mandatory_checklist,
)


class PermitFixtures:
    """Directory rows and a ready-to-submit permit payload shared by the suites below."""

    def setUp(self):
        self.admin_user = User.objects.create(email='admin@ptw.local', full_name='Admin User', role=Role.ADMIN)
        self.approver_user = User.objects.create(email='approver@ptw.local', full_name='Safety Officer',
                                                 role=Role.APPROVER)
        self.requester_user = User.objects.create(email='requester@ptw.local', full_name='Site Supervisor',
                                                  role=Role.REQUESTER)
        self.other_requester_user = User.objects.create(email='other@ptw.local', full_name='Other Supervisor',
                                                        role=Role.REQUESTER)
        self.admin = Actor.from_user(self.admin_user)
        self.approver = Actor.from_user(self.approver_user)
        self.requester = Actor.from_user(self.requester_user)
        self.other_requester = Actor.from_user(self.other_requester_user)

        self.location = Location.objects.create(name='Berth 2', address='Port road 4')
        self.contractor = Contractor.objects.create(name='Demir Kaynak Ltd', company='Demir Kaynak')
        self.service = PermitService(publisher=NullPublisher())
        self.now = timezone.now()

    def permit_data(self, **overrides):
        data = {
            'ptw_type': PermitType.HOT_WORK,
            'risk_level': 'High',
            'description': 'Welding repair on pump P-101 suction line',
            'work_entity': 'Maintenance',
            'work_area': 'Pump house',
            'work_types': ['Sahada'],
            'location': self.location.pk,
            'contractor': self.contractor.pk,
            'emergency_contact': '+90 555 000 0000',
            'valid_from': self.now - timedelta(hours=1),
            'valid_until': self.now + timedelta(hours=8),
            'personnel_list': [{'name': 'Ali Yilmaz', 'role': 'Welder'}],
            'selected_hazards': ['Açık Alev', 'Sıcak Madde'],
            'selected_ppe': ['Kaynakçı Başlığı', 'Eldiven'],
            'safety_checklist': mandatory_checklist(PermitType.HOT_WORK),
            'hazards_identified': True,
            'controls_required': True,
            'ppe_identified': True,
            'equipment_identified': True,
        }
        data.update(overrides)
        return data

    def create_permit(self, actor=None, **overrides):
        return self.service.create(self.permit_data(**overrides), actor or self.requester)

    def active_permit(self, **overrides):
        permit = self.create_permit(**overrides)
        self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        return self.service.transition(permit.pk, Event.APPROVE, self.approver)


class WorkflowPolicyTests(PermitFixtures, TestCase):
    def snapshot(self, **attrs):
        values = dict(
            status=Status.DRAFT, ptw_type=PermitType.COLD_WORK, created_by_id=self.requester.user_id,
            valid_from=self.now - timedelta(hours=1), valid_until=self.now + timedelta(hours=8),
            hazards_identified=True, controls_required=True, ppe_identified=True, equipment_identified=True,
        )
        values.update(attrs)
        return Permit(**values)

    def test_evaluate_is_pure(self):
        permit = self.snapshot()
        decision = evaluate(permit, Event.SUBMIT, self.requester, now=self.now)
        self.assertEqual(decision.source, Status.DRAFT)
        self.assertEqual(decision.target, Status.PENDING)
        # the snapshot itself is untouched
        self.assertEqual(permit.status, Status.DRAFT)
        self.assertFalse(Permit.objects.exists())

    def test_approve_goes_active_or_approved_by_window(self):
        started = self.snapshot(status=Status.PENDING)
        upcoming = self.snapshot(status=Status.PENDING, valid_from=self.now + timedelta(days=1),
                                 valid_until=self.now + timedelta(days=2))
        self.assertEqual(evaluate(started, Event.APPROVE, self.approver, now=self.now).target, Status.ACTIVE)
        self.assertEqual(evaluate(upcoming, Event.APPROVE, self.approver, now=self.now).target, Status.APPROVED)

    def test_unknown_and_misplaced_events(self):
        permit = self.snapshot()
        with self.assertRaises(InvalidTransition):
            evaluate(permit, 'launch', self.admin, now=self.now)
        with self.assertRaises(InvalidTransition):
            evaluate(permit, Event.APPROVE_CLOSURE, self.admin, now=self.now)

    def test_roles_are_enforced(self):
        pending = self.snapshot(status=Status.PENDING)
        with self.assertRaises(Forbidden):
            evaluate(pending, Event.APPROVE, self.requester, now=self.now)
        with self.assertRaises(Forbidden):
            evaluate(self.snapshot(), Event.SUBMIT, self.other_requester, now=self.now)
        with self.assertRaises(Forbidden):
            evaluate(self.snapshot(status=Status.ACTIVE, closure_requested=True),
                     Event.APPROVE_CLOSURE, self.approver, now=self.now)

    def test_legal_events_per_role(self):
        pending = self.snapshot(status=Status.PENDING)
        self.assertEqual(legal_events(pending, self.approver, self.now), ['approve', 'reject', 'cancel'])
        self.assertEqual(legal_events(pending, self.requester, self.now), ['cancel'])
        self.assertEqual(legal_events(pending, self.other_requester, self.now), [])
        self.assertEqual(legal_events(self.snapshot(), self.requester, self.now), ['submit', 'cancel'])

    def test_effective_status_and_live_flag(self):
        overdue = self.snapshot(status=Status.ACTIVE, valid_until=self.now - timedelta(minutes=1))
        self.assertEqual(effective_status(overdue, self.now), Status.EXPIRED)

        running = self.snapshot(status=Status.ACTIVE, ptw_type=PermitType.HOT_WORK, affected_dept_approved=True,
                                safety_checklist=mandatory_checklist(PermitType.HOT_WORK))
        self.assertTrue(is_live(running, self.now))
        running.safety_checklist = running.safety_checklist[:1]
        self.assertFalse(is_live(running, self.now))

    def test_expire_needs_elapsed_window(self):
        with self.assertRaises(PolicyViolation) as ctx:
            evaluate(self.snapshot(status=Status.ACTIVE), Event.EXPIRE, SYSTEM_ACTOR, now=self.now)
        self.assertEqual(ctx.exception.guard, 'not_expired')


class PermitServiceTests(PermitFixtures, TestCase):
    def test_create_assigns_sequential_numbers(self):
        first = self.create_permit()
        second = self.create_permit()
        year = timezone.now().year
        self.assertEqual(first.permit_number, f'PTW-{year}-00001')
        self.assertEqual(second.permit_number, f'PTW-{year}-00002')
        self.assertEqual(first.status, Status.DRAFT)
        self.assertEqual(first.version, 1)
        self.assertTrue(AuditLog.objects.filter(permit=first, action='permit.created').exists())

    @override_settings(PTW_PERMIT_PREFIX='IZN')
    def test_permit_prefix_is_configurable(self):
        self.assertTrue(self.create_permit().permit_number.startswith('IZN-'))

    def test_create_rejects_inverted_window(self):
        with self.assertRaises(ValidationError) as ctx:
            self.create_permit(valid_until=self.now - timedelta(hours=2))
        self.assertIn('valid_until', ctx.exception.details)
        self.assertFalse(Permit.objects.exists())

    def test_create_requires_personnel(self):
        with self.assertRaises(ValidationError) as ctx:
            self.create_permit(personnel_list=[])
        self.assertIn('personnel_list', ctx.exception.details)

    def test_site_test_forced_for_hot_work_and_marked_work_types(self):
        self.assertTrue(self.create_permit(site_test_required=False).site_test_required)
        confined = self.create_permit(ptw_type=PermitType.CONFINED_SPACE, site_test_required=False)
        self.assertTrue(confined.site_test_required)
        marked = self.create_permit(ptw_type=PermitType.COLD_WORK, work_types=['Sahada', 'Kapalı Mekanda'])
        self.assertTrue(marked.site_test_required)
        plain = self.create_permit(ptw_type=PermitType.COLD_WORK, work_types=['Sahada'])
        self.assertFalse(plain.site_test_required)

    def test_work_types_must_be_known(self):
        with self.assertRaises(ValidationError) as ctx:
            self.create_permit(work_types=['Sahada', 'Uzayda'])
        self.assertIn('work_types', ctx.exception.details)

    def test_payload_round_trip(self):
        permit = self.create_permit(personnel_list=[{'name': 'Ali Yilmaz', 'role': 'Welder'}, 'Veli Kaya'])
        permit.refresh_from_db()
        self.assertEqual(permit.personnel_list, [
            {'name': 'Ali Yilmaz', 'role': 'Welder'},
            {'name': 'Veli Kaya', 'role': 'Worker'},
        ])
        self.assertEqual(permit.selected_hazards, ['Açık Alev', 'Sıcak Madde'])
        self.assertEqual(permit.safety_checklist, mandatory_checklist(PermitType.HOT_WORK))

    def test_submit_requires_preparation_gates(self):
        permit = self.create_permit(ppe_identified=False, equipment_identified=False)
        with self.assertRaises(PolicyViolation) as ctx:
            self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        self.assertEqual(ctx.exception.guard, 'preparation_incomplete')
        self.assertEqual(ctx.exception.details['missing'], ['ppe_identified', 'equipment_identified'])
        permit.refresh_from_db()
        self.assertEqual(permit.status, Status.DRAFT)

    def test_reject_needs_a_reason(self):
        permit = self.create_permit()
        self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        with self.assertRaises(ValidationError):
            self.service.transition(permit.pk, Event.REJECT, self.approver, {'reason': '   '})

        permit = self.service.transition(permit.pk, Event.REJECT, self.approver,
                                         {'reason': 'Fire watch not assigned'})
        permit.refresh_from_db()
        self.assertEqual(permit.status, Status.REJECTED)
        self.assertEqual(permit.rejection_reason, 'Fire watch not assigned')
        entry = AuditLog.objects.get(permit=permit, action='permit.reject')
        self.assertEqual(entry.details['reason'], 'Fire watch not assigned')
        self.assertEqual((entry.from_status, entry.to_status), (Status.PENDING, Status.REJECTED))

    def test_hot_work_lifecycle(self):
        permit = self.create_permit()
        permit = self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        self.assertEqual(permit.status, Status.PENDING)

        permit = self.service.transition(permit.pk, Event.APPROVE, self.approver)
        self.assertEqual(permit.status, Status.ACTIVE)

        record = self.service.attach_child(permit.pk, 'gas_tests', {
            'test_time': self.now, 'oxygen': '20.9', 'lel': '0', 'tested_by': 'Gas Tester',
        }, self.requester)
        self.assertTrue(record.oxygen_in_range)

        permit = self.service.transition(permit.pk, Event.REQUEST_CLOSURE, self.approver)
        self.assertEqual(permit.status, Status.ACTIVE)
        self.assertTrue(permit.closure_requested)
        with self.assertRaises(PolicyViolation):
            self.service.transition(permit.pk, Event.REQUEST_CLOSURE, self.approver)

        permit = self.service.transition(permit.pk, Event.APPROVE_CLOSURE, self.admin)
        self.assertEqual(permit.status, Status.COMPLETED)
        self.assertIsNotNone(permit.completed_at)
        self.assertEqual(permit.closure_approved_by_id, self.admin.user_id)

        actions = list(AuditLog.objects.filter(permit=permit).values_list('action', flat=True))
        self.assertEqual(actions, ['permit.created', 'permit.submit', 'permit.approve', 'child.created',
                                   'permit.request_closure', 'permit.approve_closure'])

    def test_short_notice_crane_goes_to_engineering(self):
        permit = self.create_permit(ptw_type=PermitType.MOBILE_CRANE,
                                    valid_from=self.now + timedelta(days=1),
                                    valid_until=self.now + timedelta(days=1, hours=8))
        permit = self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        self.assertEqual(permit.status, Status.ENGINEERING_REVIEW)

        with self.assertRaises(PolicyViolation):
            self.service.transition(permit.pk, Event.APPROVE, self.approver)
        with self.assertRaises(Forbidden):
            self.service.transition(permit.pk, Event.APPROVE_ENGINEERING, self.approver)

        permit = self.service.transition(permit.pk, Event.APPROVE_ENGINEERING, self.admin)
        self.assertEqual(permit.status, Status.PENDING)
        self.assertTrue(permit.engineering_approved)

        permit = self.service.transition(permit.pk, Event.APPROVE, self.approver)
        self.assertEqual(permit.status, Status.APPROVED)
        with self.assertRaises(PolicyViolation) as ctx:
            self.service.transition(permit.pk, Event.ACTIVATE, self.approver)
        self.assertEqual(ctx.exception.guard, 'not_yet_valid')

    def test_crane_with_enough_notice_skips_engineering(self):
        permit = self.create_permit(ptw_type=PermitType.MOBILE_CRANE,
                                    valid_from=self.now + timedelta(days=5),
                                    valid_until=self.now + timedelta(days=5, hours=8))
        permit = self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        self.assertEqual(permit.status, Status.PENDING)

    def test_engineering_notice_measured_from_submission(self):
        permit = self.create_permit(ptw_type=PermitType.MOBILE_CRANE,
                                    valid_from=self.now + timedelta(days=5),
                                    valid_until=self.now + timedelta(days=5, hours=8))
        permit = self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        self.assertEqual(permit.status, Status.PENDING)
        self.assertIsNotNone(permit.submitted_at)
        self.assertFalse(permit.engineering_required)

        # three days on, the start is close but the permit was raised with enough notice
        later = PermitService(publisher=NullPublisher(), clock=lambda: self.now + timedelta(days=3))
        with self.assertRaises(PolicyViolation) as ctx:
            later.transition(permit.pk, Event.ROUTE_ENGINEERING, self.admin)
        self.assertEqual(ctx.exception.guard, 'engineering_not_required')
        permit = later.transition(permit.pk, Event.APPROVE, self.approver)
        self.assertEqual(permit.status, Status.APPROVED)

    def test_stale_version_is_a_conflict(self):
        permit = self.create_permit()
        self.service.transition(permit.pk, Event.SUBMIT, self.requester, expected_version=1)
        with self.assertRaises(ConflictError):
            self.service.transition(permit.pk, Event.CANCEL, self.requester, expected_version=1)
        with self.assertRaises(ValidationError):
            self.service.transition(permit.pk, Event.CANCEL, self.requester, expected_version='two')

    def test_concurrent_writer_loses_the_race(self):
        permit = self.create_permit()
        stale = Permit.objects.get(pk=permit.pk)
        self.service.transition(permit.pk, Event.SUBMIT, self.requester)

        with mock.patch.object(self.service, 'get', return_value=stale):
            with self.assertRaises(ConflictError):
                self.service.transition(permit.pk, Event.CANCEL, self.requester)
        permit.refresh_from_db()
        self.assertEqual(permit.status, Status.PENDING)
        self.assertEqual(permit.version, 2)

    def test_update_respects_field_locks(self):
        permit = self.create_permit()
        permit = self.service.update(permit.pk, {'description': 'Replace flange gasket'}, self.requester)
        self.assertEqual(permit.description, 'Replace flange gasket')
        self.assertEqual(permit.version, 2)

        self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        with self.assertRaises(PolicyViolation) as ctx:
            self.service.update(permit.pk, {'hazards_identified': False}, self.requester)
        self.assertEqual(ctx.exception.guard, 'field_locked')

        self.service.transition(permit.pk, Event.APPROVE, self.approver)
        with self.assertRaises(PolicyViolation):
            self.service.update(permit.pk, {'description': 'Too late'}, self.requester)
        with self.assertRaises(ValidationError):
            self.service.update(permit.pk, {'permit_number': 'PTW-1999-00001'}, self.admin)

    def test_validity_window_locks_once_active(self):
        upcoming = self.create_permit(ptw_type=PermitType.COLD_WORK,
                                      valid_from=self.now + timedelta(days=1),
                                      valid_until=self.now + timedelta(days=1, hours=8))
        self.service.transition(upcoming.pk, Event.SUBMIT, self.requester)
        upcoming = self.service.transition(upcoming.pk, Event.APPROVE, self.approver)
        self.assertEqual(upcoming.status, Status.APPROVED)
        new_end = self.now + timedelta(days=1, hours=10)
        upcoming = self.service.update(upcoming.pk, {'valid_until': new_end}, self.requester)
        self.assertEqual(upcoming.valid_until, new_end)

        active = self.active_permit()
        with self.assertRaises(PolicyViolation) as ctx:
            self.service.update(active.pk, {'valid_until': self.now + timedelta(hours=12)}, self.requester)
        self.assertEqual(ctx.exception.guard, 'field_locked')
        with self.assertRaises(PolicyViolation):
            self.service.update(active.pk, {'valid_from': self.now}, self.admin)

    def test_update_checks_window_against_stored_bound(self):
        permit = self.create_permit()
        with self.assertRaises(ValidationError) as ctx:
            self.service.update(permit.pk, {'valid_until': permit.valid_from - timedelta(hours=1)}, self.requester)
        self.assertIn('valid_until', ctx.exception.details)
        permit.refresh_from_db()
        self.assertEqual(permit.version, 1)

    def test_update_rights(self):
        permit = self.create_permit()
        with self.assertRaises(Forbidden):
            self.service.update(permit.pk, {'description': 'Not mine'}, self.other_requester)
        self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        with self.assertRaises(Forbidden):
            self.service.update(permit.pk, {'affected_dept_approved': True}, self.requester)

        permit = self.service.update(permit.pk, {'affected_dept_approved': True}, self.admin)
        permit.refresh_from_db()
        self.assertTrue(permit.affected_dept_approved)
        self.assertEqual(permit.affected_dept_approved_by_id, self.admin.user_id)

    def test_update_with_status_routes_through_workflow(self):
        permit = self.create_permit()
        permit = self.service.update(permit.pk, {'status': Status.PENDING}, self.requester)
        self.assertEqual(permit.status, Status.PENDING)
        with self.assertRaises(InvalidTransition):
            self.service.update(permit.pk, {'status': Status.COMPLETED}, self.admin)
        permit = self.service.update(permit.pk, {'status': Status.REJECTED, 'rejection_reason': 'Wrong location'},
                                     self.approver)
        self.assertEqual(permit.status, Status.REJECTED)
        self.assertEqual(permit.rejection_reason, 'Wrong location')

    def test_live_after_department_sign_off(self):
        permit = self.active_permit()
        self.assertFalse(is_live(permit, timezone.now()))
        permit = self.service.update(permit.pk, {'affected_dept_approved': True}, self.admin)
        self.assertTrue(is_live(permit, timezone.now()))

    def test_children_refused_after_closure(self):
        permit = self.active_permit()
        self.service.transition(permit.pk, Event.REQUEST_CLOSURE, self.approver)
        self.service.transition(permit.pk, Event.APPROVE_CLOSURE, self.admin)

        with self.assertRaises(PolicyViolation) as ctx:
            self.service.attach_child(permit.pk, 'gas_tests', {
                'test_time': self.now, 'oxygen': '20.9', 'tested_by': 'Gas Tester',
            }, self.admin)
        self.assertEqual(ctx.exception.guard, 'permit_closed')

        signature = self.service.attach_child(permit.pk, 'signatures', {
            'role': 'Area Authority', 'signer_name': 'Admin User', 'signature_url': 'data:image/png;base64,AAAA',
        }, self.admin)
        self.assertEqual(signature.permit_id, permit.pk)

    def test_handover_needs_running_permit(self):
        permit = self.create_permit()
        handover = {
            'outgoing_issuer_name': 'Day Shift', 'incoming_issuer_name': 'Night Shift',
            'outgoing_signature_url': 'sig/out.png', 'incoming_signature_url': 'sig/in.png',
        }
        with self.assertRaises(PolicyViolation):
            self.service.attach_child(permit.pk, 'handovers', handover, self.requester)
        self.service.transition(permit.pk, Event.SUBMIT, self.requester)
        self.service.transition(permit.pk, Event.APPROVE, self.approver)
        record = self.service.attach_child(permit.pk, 'handovers', handover, self.requester)
        self.assertEqual(record.incoming_issuer_name, 'Night Shift')

    def test_child_records_are_immutable(self):
        permit = self.create_permit()
        record = self.service.attach_child(permit.pk, 'checklists', {
            'checked_by_name': 'Supervisor', 'is_safe': True, 'comments': 'Area barricaded',
        }, self.requester)
        record.comments = 'Edited afterwards'
        with self.assertRaises(PolicyViolation):
            record.save()
        self.assertEqual(DailyChecklist.objects.get(pk=record.pk).comments, 'Area barricaded')

    def test_child_validation_and_kinds(self):
        permit = self.create_permit()
        with self.assertRaises(ValidationError):
            self.service.attach_child(permit.pk, 'certificates', {
                'certificate_type': 'gas', 'holder_name': 'Ali', 'issue_date': '2026-05-10',
                'expiry_date': '2026-05-01',
            }, self.requester)
        with self.assertRaises(ValidationError):
            self.service.attach_child(permit.pk, 'photos', {}, self.requester)
        with self.assertRaises(NotFound):
            self.service.get(99999)

    def test_expire_overdue(self):
        permit = self.active_permit(valid_from=self.now - timedelta(hours=10),
                                    valid_until=self.now - timedelta(hours=1))
        self.assertEqual(effective_status(permit, timezone.now()), Status.EXPIRED)
        expired = self.service.expire_overdue()
        self.assertEqual([p.pk for p in expired], [permit.pk])
        permit.refresh_from_db()
        self.assertEqual(permit.status, Status.EXPIRED)
        self.assertIsNone(AuditLog.objects.get(permit=permit, action='permit.expire').user_id)


class EventRelayTests(PermitFixtures, TestCase):
    def test_events_published_after_commit(self):
        received = []
        relay.subscribe(received.append)
        self.addCleanup(relay.unsubscribe, received.append)
        service = PermitService()

        with self.captureOnCommitCallbacks(execute=True):
            permit = service.create(self.permit_data(), self.requester)
        with self.captureOnCommitCallbacks(execute=True):
            service.transition(permit.pk, Event.SUBMIT, self.requester)

        self.assertEqual([e.name for e in received], ['permit.created', 'permit.submit'])
        self.assertEqual(received[1].payload['status'], Status.PENDING)
        self.assertEqual(received[1].as_dict()['permit_id'], permit.pk)

    def test_nothing_published_on_failure(self):
        received = []
        relay.subscribe(received.append)
        self.addCleanup(relay.unsubscribe, received.append)
        permit = self.create_permit(hazards_identified=False)

        with self.captureOnCommitCallbacks(execute=True):
            with self.assertRaises(PolicyViolation):
                PermitService().transition(permit.pk, Event.SUBMIT, self.requester)
        self.assertEqual(received, [])

    def test_failing_subscriber_does_not_break_the_write(self):
        def broken(event):
            raise RuntimeError("socket closed")

        relay.subscribe(broken)
        self.addCleanup(relay.unsubscribe, broken)
        with self.captureOnCommitCallbacks(execute=True):
            permit = PermitService().create(self.permit_data(), self.requester)
        self.assertTrue(Permit.objects.filter(pk=permit.pk).exists())

    def test_failing_publisher_is_logged_not_raised(self):
        publisher = mock.Mock()
        publisher.publish.side_effect = RuntimeError("broker down")
        service = PermitService(publisher=publisher)
        with self.assertLogs('ptw_app.services', level='WARNING'):
            with self.captureOnCommitCallbacks(execute=True):
                service.create(self.permit_data(), self.requester)
        publisher.publish.assert_called_once()


class ExportTests(PermitFixtures, TestCase):
    def test_parse_json_list_degrades_to_empty(self):
        self.assertEqual(parse_json_list('["Baret", "Eldiven"]'), ['Baret', 'Eldiven'])
        self.assertEqual(parse_json_list(['Baret']), ['Baret'])
        self.assertEqual(parse_json_list('{not json'), [])
        self.assertEqual(parse_json_list('{"a": 1}'), [])
        self.assertEqual(parse_json_list(None), [])

    def test_excel_export(self):
        permit = self.active_permit()
        self.service.attach_child(permit.pk, 'gas_tests', {
            'test_time': self.now, 'oxygen': '20.9', 'co': '3', 'tested_by': 'Gas Tester',
        }, self.requester)
        content = render_excel(permit)
        self.assertTrue(content.startswith(b'PK'))

        sheet = load_workbook(BytesIO(content)).active
        self.assertEqual(sheet['E1'].value, 'Kayıt No')
        self.assertEqual(sheet['F1'].value, permit.permit_number)
        values = [cell.value for row in sheet.iter_rows() for cell in row]
        self.assertIn('Açık Alev', values)
        self.assertIn('Gas Tester', values)

    def test_excel_export_survives_malformed_payload(self):
        permit = self.create_permit()
        Permit.objects.filter(pk=permit.pk).update(selected_hazards='{broken', personnel_list='nope')
        permit.refresh_from_db()
        self.assertTrue(render_excel(permit).startswith(b'PK'))

    def test_pdf_export(self):
        permit = self.create_permit()
        with mock.patch('ptw_app.exports._write_pdf', return_value=b'%PDF-1.7 test') as write:
            self.assertEqual(render_pdf(permit), b'%PDF-1.7 test')
        html = write.call_args[0][0]
        self.assertIn(permit.permit_number, html)
        self.assertIn('Ali Yilmaz', html)

    def test_pdf_failure_is_an_export_error(self):
        permit = self.create_permit()
        with mock.patch('ptw_app.exports._write_pdf', side_effect=OSError("cairo not found")):
            with self.assertRaises(ExportError) as ctx:
                render_pdf(permit)
        self.assertIn('cairo not found', ctx.exception.message)

    def test_csv_register(self):
        first = self.create_permit()
        second = self.active_permit(ptw_type=PermitType.COLD_WORK)
        lines = render_csv(Permit.objects.order_by('pk')).decode('utf-8').splitlines()
        self.assertTrue(lines[0].startswith('permit_number,ptw_type,risk_level,status'))
        self.assertEqual(len(lines), 3)
        self.assertTrue(lines[1].startswith(first.permit_number))
        self.assertIn('active', lines[2])
        self.assertTrue(lines[2].startswith(second.permit_number))


class DashboardTests(PermitFixtures, TestCase):
    def test_dashboard_stats(self):
        self.create_permit()
        self.active_permit()
        closing = self.active_permit(valid_until=self.now + timedelta(hours=3))
        self.service.transition(closing.pk, Event.REQUEST_CLOSURE, self.approver)

        stats = dashboard_stats()
        self.assertEqual(stats['total'], 3)
        self.assertEqual(stats['by_status'][Status.DRAFT], 1)
        self.assertEqual(stats['active'], 2)
        self.assertEqual(stats['closure_requested'], 1)
        self.assertEqual(stats['expiring_soon'], 2)
        self.assertEqual(stats['overdue'], 0)

    def test_analytics_summary(self):
        self.assertTrue(analytics_summary()['no_data'])
        self.create_permit()
        self.create_permit(ptw_type=PermitType.EXCAVATION, risk_level='Low')
        summary = analytics_summary()
        self.assertFalse(summary['no_data'])
        self.assertEqual(summary['total'], 2)
        self.assertEqual(summary['by_type'], {'Hot Work': 1, 'Excavation': 1})
        self.assertEqual(summary['type_risk_matrix']['Excavation']['Low'], 1)
        self.assertIn('<div', summary['charts']['type_risk'])


class PermitApiTests(PermitFixtures, TestCase):
    def api_data(self, **overrides):
        data = self.permit_data(**overrides)
        data['valid_from'] = data['valid_from'].isoformat()
        data['valid_until'] = data['valid_until'].isoformat()
        return data

    def post(self, url, data, user):
        return self.client.post(url, json.dumps(data), content_type='application/json',
                                HTTP_X_USER_ID=str(user.pk))

    def test_health(self):
        response = self.client.get(reverse('health'))
        self.assertEqual(response.json()['status'], 'ok')

    def test_create_and_read(self):
        response = self.post(reverse('permit_list'), self.api_data(), self.requester_user)
        self.assertEqual(response.status_code, 201)
        body = response.json()['data']
        self.assertTrue(body['permit_number'].startswith('PTW-'))
        self.assertEqual(body['available_actions'], ['submit', 'cancel'])
        self.assertTrue(body['site_test_required'])

        detail = self.client.get(reverse('permit_detail', args=[body['id']]))
        self.assertEqual(detail.json()['data']['personnel_list'][0]['name'], 'Ali Yilmaz')

        listing = self.client.get(reverse('permit_list'), {'ptw_type': 'Hot Work', 'search': 'P-101'})
        self.assertEqual(len(listing.json()['data']), 1)

    def test_errors_are_json(self):
        response = self.client.post(reverse('permit_list'), json.dumps(self.api_data()),
                                    content_type='application/json')
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()['error']['kind'], 'forbidden')

        response = self.post(reverse('permit_list'), self.api_data(emergency_contact=''), self.requester_user)
        self.assertEqual(response.status_code, 400)
        self.assertIn('emergency_contact', response.json()['error']['details'])

        response = self.client.get(reverse('permit_detail', args=[4242]))
        self.assertEqual(response.status_code, 404)

    def test_transitions_over_http(self):
        permit = self.create_permit()
        url = reverse('permit_transition', args=[permit.pk, 'submit'])
        response = self.post(url, {'version': 1}, self.requester_user)
        self.assertEqual(response.json()['data']['status'], Status.PENDING)

        response = self.post(reverse('permit_transition', args=[permit.pk, 'reject']), {}, self.approver_user)
        self.assertEqual(response.status_code, 400)

        response = self.post(reverse('permit_transition', args=[permit.pk, 'approve']), {'version': 1},
                             self.approver_user)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error']['kind'], 'conflict')

        response = self.post(reverse('permit_transition', args=[permit.pk, 'request-closure']), {},
                             self.approver_user)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error']['guard'], 'invalid_transition')

        response = self.client.get(reverse('permit_actions', args=[permit.pk]),
                                   HTTP_X_USER_ID=str(self.approver_user.pk))
        self.assertEqual(response.json()['data'], ['approve', 'reject', 'cancel'])

        audit = self.client.get(reverse('permit_audit', args=[permit.pk])).json()['data']
        self.assertEqual([entry['action'] for entry in audit], ['permit.created', 'permit.submit'])

    def test_update_over_http(self):
        permit = self.create_permit()
        response = self.client.patch(reverse('permit_detail', args=[permit.pk]),
                                     json.dumps({'work_area': 'Tank 3', 'version': 1}),
                                     content_type='application/json', HTTP_X_USER_ID=str(self.requester_user.pk))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['work_area'], 'Tank 3')
        self.assertEqual(response.json()['data']['version'], 2)

    def test_child_records_over_http(self):
        permit = self.active_permit()
        url = reverse('permit_children', args=[permit.pk, 'gas-tests'])
        response = self.post(url, {'test_time': self.now.isoformat(), 'oxygen': '18.0', 'tested_by': 'Gas Tester'},
                             self.requester_user)
        self.assertEqual(response.status_code, 201)
        self.assertFalse(GasTestRecord.objects.get().oxygen_in_range)

        listing = self.client.get(url).json()['data']
        self.assertEqual(listing[0]['tested_by'], 'Gas Tester')

    def test_exports_over_http(self):
        permit = self.create_permit()
        response = self.client.get(reverse('permit_export', args=[permit.pk, 'excel']))
        self.assertEqual(response.status_code, 200)
        self.assertIn(permit.permit_number, response['Content-Disposition'])
        self.assertTrue(response.content.startswith(b'PK'))

        with mock.patch('ptw_app.exports._write_pdf', side_effect=OSError("cairo not found")):
            response = self.client.get(reverse('permit_export', args=[permit.pk, 'pdf']))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['error']['kind'], 'export_error')

        response = self.client.get(reverse('permit_export', args=[permit.pk, 'docx']))
        self.assertEqual(response.status_code, 404)

        response = self.client.get(reverse('permit_register_csv'))
        self.assertEqual(response['Content-Type'], 'text/csv')
        self.assertIn(permit.permit_number, response.content.decode('utf-8'))

    def test_directories(self):
        response = self.post(reverse('location_list'), {'name': 'Tank Farm'}, self.requester_user)
        self.assertEqual(response.status_code, 403)
        response = self.post(reverse('location_list'), {'name': 'Tank Farm'}, self.approver_user)
        self.assertEqual(response.status_code, 201)

        response = self.post(reverse('user_list'), {'email': 'new@ptw.local', 'full_name': 'New', 'role': 'approver'},
                             self.approver_user)
        self.assertEqual(response.status_code, 403)
        response = self.post(reverse('user_list'), {'email': 'new@ptw.local', 'full_name': 'New', 'role': 'approver'},
                             self.admin_user)
        self.assertEqual(response.status_code, 201)

        names = [c['name'] for c in self.client.get(reverse('contractor_list'), {'search': 'demir'}).json()['data']]
        self.assertEqual(names, ['Demir Kaynak Ltd'])

    def test_dashboard_over_http(self):
        self.create_permit()
        response = self.client.get(reverse('dashboard_stats'))
        self.assertEqual(response.json()['data']['total'], 1)


    def put(self, url, data, user):
        return self.client.put(url, json.dumps(data), content_type='application/json',
                               HTTP_X_USER_ID=str(user.pk))

    def test_form_encoded_edit_is_refused(self):
        permit = self.create_permit()
        response = self.client.put(reverse('permit_detail', args=[permit.pk]), 'work_area=Tank+3',
                                   content_type='application/x-www-form-urlencoded',
                                   HTTP_X_USER_ID=str(self.requester_user.pk))
        self.assertEqual(response.status_code, 400)
        permit.refresh_from_db()
        self.assertEqual(permit.work_area, 'Pump house')
        self.assertEqual(permit.version, 1)

    def test_contractor_detail(self):
        url = reverse('contractor_detail', args=[self.contractor.pk])
        self.assertEqual(self.client.get(url).json()['data']['name'], 'Demir Kaynak Ltd')
        self.assertEqual(self.client.get(reverse('contractor_detail', args=[999])).status_code, 404)

        response = self.put(url, {'phone': '+90 212 000 00 00'}, self.requester_user)
        self.assertEqual(response.status_code, 403)
        response = self.put(url, {'phone': '+90 212 000 00 00'}, self.approver_user)
        self.assertEqual(response.status_code, 200)
        self.contractor.refresh_from_db()
        self.assertEqual(self.contractor.phone, '+90 212 000 00 00')
        self.assertEqual(self.contractor.name, 'Demir Kaynak Ltd')

    def test_deactivated_location_is_not_offered(self):
        url = reverse('location_detail', args=[self.location.pk])
        response = self.client.delete(url, HTTP_X_USER_ID=str(self.approver_user.pk))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['data']['is_active'])

        response = self.post(reverse('permit_list'), self.api_data(), self.requester_user)
        self.assertEqual(response.status_code, 400)
        self.assertIn('location', response.json()['error']['details'])

        response = self.put(url, {'is_active': 'yes'}, self.approver_user)
        self.assertEqual(response.status_code, 400)
        response = self.put(url, {'is_active': True}, self.approver_user)
        self.location.refresh_from_db()
        self.assertTrue(self.location.is_active)
        self.assertEqual(self.location.name, 'Berth 2')

    def test_admin_manages_users(self):
        url = reverse('user_detail', args=[self.requester_user.pk])
        response = self.put(url, {'role': Role.APPROVER}, self.approver_user)
        self.assertEqual(response.status_code, 403)

        response = self.client.patch(url, json.dumps({'role': Role.APPROVER}), content_type='application/json',
                                     HTTP_X_USER_ID=str(self.admin_user.pk))
        self.assertEqual(response.status_code, 200)
        self.requester_user.refresh_from_db()
        self.assertEqual(self.requester_user.role, Role.APPROVER)

        response = self.client.delete(reverse('user_detail', args=[self.admin_user.pk]),
                                      HTTP_X_USER_ID=str(self.admin_user.pk))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error']['guard'], 'self_deactivation')

        self.client.delete(url, HTTP_X_USER_ID=str(self.admin_user.pk))
        response = self.post(reverse('permit_list'), self.api_data(), self.requester_user)
        self.assertEqual(response.status_code, 403)

class CommandTests(PermitFixtures, TestCase):
    def test_expire_permits_command(self):
        permit = self.active_permit(valid_from=self.now - timedelta(hours=10),
                                    valid_until=self.now - timedelta(minutes=5))
        out = StringIO()
        call_command('expire_permits', stdout=out)
        permit.refresh_from_db()
        self.assertEqual(permit.status, Status.EXPIRED)
        self.assertIn('1 permit(s) expired', out.getvalue())

    def test_seed_command(self):
        out = StringIO()
        call_command('seed_ptw', permits=3, seed=7, stdout=out, stderr=StringIO())
        self.assertTrue(User.objects.filter(email='admin@ptw.local').exists())
        self.assertEqual(Permit.objects.count(), 3)
        self.assertIn('3 permits', out.getvalue())
