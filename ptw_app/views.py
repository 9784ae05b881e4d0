import json
import logging

from django.db.models import Q
from django.forms.models import model_to_dict
from django.http import JsonResponse, HttpResponse
from django.utils import timezone
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from .analytics import dashboard_stats, analytics_summary
from .choices import Role
from .exceptions import PermitError, ValidationError, Forbidden, NotFound, PolicyViolation
from .exports import (
    render_excel, render_pdf, render_csv, parse_json_list,
    EXCEL_CONTENT_TYPE, PDF_CONTENT_TYPE, CSV_CONTENT_TYPE,
)
from .forms import LocationForm, ContractorForm, UserForm
from .models import Location, Contractor, User
from .services import PermitService, resolve_actor, form_errors
from .workflow import effective_status, is_live, legal_events, mandatory_checklist, requires_engineering_review

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Serialisation
# ----------------------------------------------------------------------
def serialize_permit(permit, actor=None, now=None):
    now = now or timezone.now()
    data = {
        'id': permit.pk,
        'permit_number': permit.permit_number,
        'ptw_type': permit.ptw_type,
        'ptw_sub_type': permit.ptw_sub_type,
        'risk_level': permit.risk_level,
        'status': permit.status,
        'effective_status': effective_status(permit, now),
        'is_live': is_live(permit, now),
        'version': permit.version,
        'description': permit.description,
        'work_area': permit.work_area,
        'work_entity': permit.work_entity,
        'work_types': parse_json_list(permit.work_types),
        'equipment': parse_json_list(permit.equipment),
        'location': {'id': permit.location_id, 'name': permit.location.name},
        'contractor': {'id': permit.contractor_id, 'name': permit.contractor.name},
        'emergency_contact': permit.emergency_contact,
        'personnel_list': parse_json_list(permit.personnel_list),
        'selected_hazards': parse_json_list(permit.selected_hazards),
        'selected_precautions': parse_json_list(permit.selected_precautions),
        'selected_ppe': parse_json_list(permit.selected_ppe),
        'other_hazards': permit.other_hazards,
        'other_precautions': permit.other_precautions,
        'other_ppe': permit.other_ppe,
        'safety_checklist': parse_json_list(permit.safety_checklist),
        'mandatory_checklist': mandatory_checklist(permit.ptw_type),
        'required_certificates': parse_json_list(permit.required_certificates),
        'site_test_required': permit.site_test_required,
        'valid_from': permit.valid_from,
        'valid_until': permit.valid_until,
        'completed_at': permit.completed_at,
        'hazards_identified': permit.hazards_identified,
        'controls_required': permit.controls_required,
        'ppe_identified': permit.ppe_identified,
        'equipment_identified': permit.equipment_identified,
        'affected_dept_approved': permit.affected_dept_approved,
        'submitted_at': permit.submitted_at,
        'engineering_required': permit.engineering_required,
        'engineering_approved': permit.engineering_approved,
        'requires_engineering_review': requires_engineering_review(permit, now),
        'closure_requested': permit.closure_requested,
        'rejection_reason': permit.rejection_reason,
        'created_by': {'id': permit.created_by_id, 'full_name': permit.created_by.full_name},
        'created_at': permit.created_at,
        'updated_at': permit.updated_at,
    }
    if actor is not None:
        data['available_actions'] = legal_events(permit, actor, now)
    return data


def serialize_record(record):
    data = model_to_dict(record)
    data['id'] = record.pk
    data['created_at'] = record.created_at
    return data


def serialize_audit(entry):
    return {
        'id': entry.pk,
        'action': entry.action,
        'entity_type': entry.entity_type,
        'entity_id': entry.entity_id,
        'from_status': entry.from_status,
        'to_status': entry.to_status,
        'details': entry.details,
        'user': entry.user.full_name if entry.user_id else 'system',
        'created_at': entry.created_at,
    }


def ok(data, status=200):
    return JsonResponse({'success': True, 'data': data}, status=status)


def error_response(exc):
    return JsonResponse({'success': False, 'error': exc.as_dict()}, status=exc.status_code)


# ----------------------------------------------------------------------
# Base API view
# ----------------------------------------------------------------------
@method_decorator(csrf_exempt, name='dispatch')
class ApiView(View):
    def dispatch(self, request, *args, **kwargs):
        self.service = PermitService()
        try:
            return super().dispatch(request, *args, **kwargs)
        except PermitError as exc:
            logger.info("%s %s -> %s: %s", request.method, request.path, exc.kind, exc.message)
            return error_response(exc)

    def actor(self, required=True):
        user_id = self.request.headers.get('X-User-Id')
        if not user_id and not required:
            return None
        return resolve_actor(user_id)

    def payload(self):
        if self.request.content_type == 'application/json':
            try:
                data = json.loads(self.request.body or b'{}')
            except ValueError:
                raise ValidationError("request body is not valid JSON")
            if not isinstance(data, dict):
                raise ValidationError("request body must be a JSON object")
            return data
        if self.request.method in ('PUT', 'PATCH'):
            # Django only parses form bodies for POST
            raise ValidationError("request body must be JSON", {'content_type': [self.request.content_type]})
        return self.request.POST.dict()

    def ip_address(self):
        return self.request.META.get('REMOTE_ADDR')


def health(request):
    return JsonResponse({
        'status': 'ok',
        'message': 'PTW Tracker API is running',
        'timestamp': timezone.now().isoformat(),
    })


# ----------------------------------------------------------------------
# Permits
# ----------------------------------------------------------------------
class PermitListView(ApiView):
    def get(self, request):
        permits = self.service.list(
            status=request.GET.get('status'),
            ptw_type=request.GET.get('ptw_type'),
            risk_level=request.GET.get('risk_level'),
            search=request.GET.get('search'),
        )
        now = timezone.now()
        return ok([serialize_permit(p, now=now) for p in permits])

    def post(self, request):
        actor = self.actor()
        permit = self.service.create(self.payload(), actor, self.ip_address())
        return ok(serialize_permit(permit, actor), status=201)


class PermitDetailView(ApiView):
    def get(self, request, pk):
        return ok(serialize_permit(self.service.get(pk), self.actor(required=False)))

    def put(self, request, pk):
        actor = self.actor()
        permit = self.service.update(pk, self.payload(), actor, self.ip_address())
        return ok(serialize_permit(permit, actor))

    patch = put


class PermitTransitionView(ApiView):
    def post(self, request, pk, event):
        actor = self.actor()
        data = self.payload()
        permit = self.service.transition(
            pk, event.replace('-', '_'), actor,
            payload={'reason': data.get('reason', '')},
            expected_version=data.get('version'),
            ip_address=self.ip_address(),
        )
        return ok(serialize_permit(permit, actor))


class PermitActionsView(ApiView):
    def get(self, request, pk):
        return ok(self.service.actions(pk, self.actor()))


class PermitAuditView(ApiView):
    def get(self, request, pk):
        return ok([serialize_audit(entry) for entry in self.service.audit_trail(pk)])


class PermitChildrenView(ApiView):
    def get(self, request, pk, kind):
        return ok([serialize_record(r) for r in self.service.children(pk, kind.replace('-', '_'))])

    def post(self, request, pk, kind):
        record = self.service.attach_child(pk, kind.replace('-', '_'), self.payload(), self.actor(),
                                           self.ip_address())
        return ok(serialize_record(record), status=201)


EXPORTS = {
    'excel': (render_excel, EXCEL_CONTENT_TYPE, 'xlsx'),
    'pdf': (render_pdf, PDF_CONTENT_TYPE, 'pdf'),
}


class PermitExportView(ApiView):
    def get(self, request, pk, fmt):
        if fmt not in EXPORTS:
            raise NotFound(f"unknown export format '{fmt}'", {'formats': sorted(EXPORTS)})
        renderer, content_type, extension = EXPORTS[fmt]
        permit = self.service.get(pk)
        response = HttpResponse(renderer(permit), content_type=content_type)
        response['Content-Disposition'] = f'attachment; filename="permit-{permit.permit_number}.{extension}"'
        return response


class PermitRegisterCsvView(ApiView):
    def get(self, request):
        permits = self.service.list(
            status=request.GET.get('status'),
            ptw_type=request.GET.get('ptw_type'),
            risk_level=request.GET.get('risk_level'),
            search=request.GET.get('search'),
        )
        response = HttpResponse(render_csv(permits), content_type=CSV_CONTENT_TYPE)
        filename = f"PTW_Register_{timezone.now().strftime('%Y%m%d_%H%M')}.csv"
        response['Content-Disposition'] = f'attachment; filename="{filename}"'
        return response


# ----------------------------------------------------------------------
# Dashboard / analytics
# ----------------------------------------------------------------------
class DashboardStatsView(ApiView):
    def get(self, request):
        return ok(dashboard_stats())


class AnalyticsSummaryView(ApiView):
    def get(self, request):
        return ok(analytics_summary())


# ----------------------------------------------------------------------
# Directories
# ----------------------------------------------------------------------
class DirectoryView(ApiView):
    model = None
    form_class = None
    search_fields = ('name',)
    admin_only = False

    @property
    def label(self):
        return self.model._meta.verbose_name

    def writer(self, verb):
        actor = self.actor()
        if actor.role == Role.REQUESTER or (self.admin_only and actor.role != Role.ADMIN):
            raise Forbidden(f"role '{actor.role}' may not {verb} {self.model._meta.verbose_name_plural}")
        return actor

    def lookup(self, pk):
        try:
            return self.model.objects.get(pk=pk)
        except self.model.DoesNotExist:
            raise NotFound(f"{self.label} {pk} not found", {'id': pk})


class DirectoryListView(DirectoryView):
    def get(self, request):
        items = self.model.objects.all().order_by('pk')
        search = request.GET.get('search')
        if search:
            query = Q()
            for field in self.search_fields:
                query |= Q(**{f'{field}__icontains': search})
            items = items.filter(query)
        return ok([model_to_dict(item) for item in items])

    def post(self, request):
        self.writer('add')
        form = self.form_class(self.payload())
        if not form.is_valid():
            raise ValidationError(f"invalid {self.label}", form_errors(form))
        item = form.save()
        logger.info("Created %s %s", self.label, item.pk)
        return ok(model_to_dict(item), status=201)


class DirectoryDetailView(DirectoryView):
    """Read, partial update and soft delete of one directory row."""

    def get(self, request, pk):
        return ok(model_to_dict(self.lookup(pk)))

    def put(self, request, pk):
        self.writer('update')
        item = self.lookup(pk)
        data = self.payload()
        is_active = data.pop('is_active', None)
        if is_active is not None and not isinstance(is_active, bool):
            raise ValidationError(f"invalid {self.label}", {'is_active': ["Must be true or false."]})

        # omitted fields keep their stored values
        current = model_to_dict(item, fields=self.form_class._meta.fields)
        form = self.form_class(dict(current, **data), instance=item)
        if not form.is_valid():
            raise ValidationError(f"invalid {self.label}", form_errors(form))
        item = form.save(commit=False)
        if is_active is not None:
            item.is_active = is_active
        item.save()
        logger.info("Updated %s %s: %s", self.label, item.pk, sorted(data))
        return ok(model_to_dict(item))

    patch = put

    def delete(self, request, pk):
        actor = self.writer('deactivate')
        item = self.lookup(pk)
        if self.model is User and item.pk == actor.user_id:
            raise PolicyViolation('self_deactivation', "users cannot deactivate their own account")
        item.is_active = False
        item.save(update_fields=['is_active'])
        logger.info("Deactivated %s %s", self.label, item.pk)
        return ok(model_to_dict(item))


class ContractorDirectory:
    model = Contractor
    form_class = ContractorForm
    search_fields = ('name', 'company', 'contact_person')


class LocationDirectory:
    model = Location
    form_class = LocationForm
    search_fields = ('name', 'address')


class UserDirectory:
    model = User
    form_class = UserForm
    search_fields = ('full_name', 'email')
    admin_only = True


class ContractorListView(ContractorDirectory, DirectoryListView):
    pass


class ContractorDetailView(ContractorDirectory, DirectoryDetailView):
    pass


class LocationListView(LocationDirectory, DirectoryListView):
    pass


class LocationDetailView(LocationDirectory, DirectoryDetailView):
    pass


class UserListView(UserDirectory, DirectoryListView):
    pass


class UserDetailView(UserDirectory, DirectoryDetailView):
    pass
