from django import forms

from .choices import PermitType, RiskLevel, Role, WORK_TYPES
from .models import (
    Location, Contractor, User, GasTestRecord, DailyChecklist, Handover,
    Certificate, Signature, PermitDocument,
)
from .workflow import site_test_mandatory


class ListField(forms.JSONField):
    """JSON array input; a missing optional value cleans to an empty list."""

    def to_python(self, value):
        value = super().to_python(value)
        if value is None:
            return []
        if not isinstance(value, list):
            raise forms.ValidationError("Enter a list.", code='invalid')
        return value


class PermitCreateForm(forms.Form):
    ptw_type = forms.ChoiceField(choices=PermitType.choices)
    ptw_sub_type = forms.CharField(required=False, max_length=50)
    risk_level = forms.ChoiceField(choices=RiskLevel.choices)
    description = forms.CharField(
        widget=forms.Textarea(attrs={'rows': 4, 'placeholder': 'Describe the activity, e.g. Welding repair on pump P-101 suction line'})
    )
    work_area = forms.CharField(required=False, max_length=255)
    work_entity = forms.CharField(max_length=255, help_text="Department or company performing the work")
    work_types = ListField(required=False)
    equipment = ListField(required=False)
    location = forms.ModelChoiceField(queryset=Location.objects.filter(is_active=True))
    contractor = forms.ModelChoiceField(queryset=Contractor.objects.filter(is_active=True))
    emergency_contact = forms.CharField(max_length=100)
    valid_from = forms.DateTimeField()
    valid_until = forms.DateTimeField()
    personnel_list = ListField(help_text="List of {name, role}")

    selected_hazards = ListField(required=False)
    selected_precautions = ListField(required=False)
    selected_ppe = ListField(required=False)
    other_hazards = forms.CharField(required=False)
    other_precautions = forms.CharField(required=False)
    other_ppe = forms.CharField(required=False)
    safety_checklist = ListField(required=False)
    required_certificates = ListField(required=False)
    site_test_required = forms.BooleanField(required=False)

    hazards_identified = forms.BooleanField(required=False)
    controls_required = forms.BooleanField(required=False)
    ppe_identified = forms.BooleanField(required=False)
    equipment_identified = forms.BooleanField(required=False)

    def clean_work_types(self):
        work_types = self.cleaned_data['work_types']
        unknown = [str(w) for w in work_types if w not in WORK_TYPES]
        if unknown:
            raise forms.ValidationError("Unknown work type(s): %(types)s", code='invalid',
                                        params={'types': ', '.join(unknown)})
        return work_types

    def clean_personnel_list(self):
        people = []
        for entry in self.cleaned_data['personnel_list']:
            if isinstance(entry, str):
                entry = {'name': entry}
            if not isinstance(entry, dict) or not str(entry.get('name') or '').strip():
                raise forms.ValidationError("Each person needs a name.", code='invalid')
            people.append({'name': str(entry['name']).strip(), 'role': entry.get('role') or 'Worker'})
        if not people:
            raise forms.ValidationError("At least one person is required.", code='required')
        return people

    def _current(self, name):
        return self.cleaned_data.get(name)

    def clean(self):
        cleaned = super().clean()
        valid_from, valid_until = self._current('valid_from'), self._current('valid_until')
        if valid_from and valid_until and valid_until <= valid_from:
            self.add_error('valid_until', "Valid until must be after valid from.")
        if 'site_test_required' in self.fields or 'ptw_type' in self.fields or 'work_types' in self.fields:
            if site_test_mandatory(self._current('ptw_type'), self._current('work_types')):
                cleaned['site_test_required'] = True
        return cleaned


class PermitUpdateForm(PermitCreateForm):
    """Partial update: only the fields present in ``data`` are validated."""

    affected_dept_approved = forms.BooleanField(required=False)

    def __init__(self, data, instance, *args, **kwargs):
        super().__init__(data, *args, **kwargs)
        self.instance = instance
        for name in list(self.fields):
            if name not in data:
                del self.fields[name]

    def _current(self, name):
        if name in self.fields:
            return self.cleaned_data.get(name)
        return getattr(self.instance, name)


class LocationForm(forms.ModelForm):
    class Meta:
        model = Location
        fields = ['name', 'address', 'site_manager']


class ContractorForm(forms.ModelForm):
    class Meta:
        model = Contractor
        fields = ['name', 'company', 'contact_person', 'email', 'phone',
                  'certification_number', 'certification_expiry']


class UserForm(forms.ModelForm):
    class Meta:
        model = User
        fields = ['email', 'full_name', 'role']

    def clean_role(self):
        role = self.cleaned_data['role']
        if role == Role.SYSTEM:
            raise forms.ValidationError("The system role cannot be assigned to a user.", code='invalid')
        return role


class GasTestForm(forms.ModelForm):
    class Meta:
        model = GasTestRecord
        fields = ['test_time', 'oxygen', 'co2', 'lel', 'toxic', 'co', 'tested_by']


class DailyChecklistForm(forms.ModelForm):
    class Meta:
        model = DailyChecklist
        fields = ['checked_by_name', 'is_safe', 'comments']


class HandoverForm(forms.ModelForm):
    class Meta:
        model = Handover
        fields = ['outgoing_issuer_name', 'incoming_issuer_name',
                  'outgoing_signature_url', 'incoming_signature_url', 'notes']


class CertificateForm(forms.ModelForm):
    class Meta:
        model = Certificate
        fields = ['certificate_type', 'certificate_no', 'holder_name', 'issue_date',
                  'expiry_date', 'issuing_authority', 'notes']

    def clean(self):
        cleaned = super().clean()
        issue, expiry = cleaned.get('issue_date'), cleaned.get('expiry_date')
        if issue and expiry and expiry <= issue:
            self.add_error('expiry_date', "Expiry date must be after the issue date.")
        return cleaned


class SignatureForm(forms.ModelForm):
    class Meta:
        model = Signature
        fields = ['role', 'signer_name', 'signature_url']


class DocumentForm(forms.ModelForm):
    class Meta:
        model = PermitDocument
        fields = ['name', 'doc_type', 'file_url']


CHILD_FORMS = {
    'gas_tests': GasTestForm,
    'checklists': DailyChecklistForm,
    'handovers': HandoverForm,
    'certificates': CertificateForm,
    'signatures': SignatureForm,
    'documents': DocumentForm,
}
