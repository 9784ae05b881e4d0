from django.contrib import admin
from .models import (
    User, Location, Contractor, Permit, AuditLog, GasTestRecord, DailyChecklist,
    Handover, Certificate, Signature, PermitDocument,
)

admin.site.register(User)
admin.site.register(Location)
admin.site.register(Contractor)


class ReadOnlyInline(admin.TabularInline):
    extra = 0
    can_delete = False

    def has_change_permission(self, request, obj=None):
        return False

    def has_add_permission(self, request, obj=None):
        return False


class GasTestInline(ReadOnlyInline):
    model = GasTestRecord
    fields = ('test_time', 'oxygen', 'co2', 'lel', 'toxic', 'co', 'tested_by')


class SignatureInline(ReadOnlyInline):
    model = Signature
    fields = ('role', 'signer_name', 'signed_at')


class AuditLogInline(ReadOnlyInline):
    model = AuditLog
    fields = ('created_at', 'action', 'from_status', 'to_status', 'user')


@admin.register(Permit)
class PermitAdmin(admin.ModelAdmin):
    list_display = ('permit_number', 'ptw_type', 'risk_level', 'status', 'location', 'contractor',
                    'valid_from', 'valid_until', 'gas_test_count')
    list_filter = ('status', 'ptw_type', 'risk_level', 'closure_requested')
    search_fields = ('permit_number', 'description', 'work_entity', 'location__name', 'contractor__name')
    date_hierarchy = 'created_at'
    # status only moves through the workflow service
    readonly_fields = ('permit_number', 'status', 'version', 'submitted_at', 'engineering_required',
                       'created_at', 'updated_at', 'completed_at')
    inlines = [GasTestInline, SignatureInline, AuditLogInline]

    def gas_test_count(self, obj):
        return obj.gastestrecords.count()
    gas_test_count.short_description = "Gas Tests"


@admin.register(DailyChecklist, Handover, Certificate, PermitDocument)
class ChildRecordAdmin(admin.ModelAdmin):
    list_display = ('permit', 'created_at')
    list_filter = ('created_at',)
    search_fields = ('permit__permit_number',)

    def has_change_permission(self, request, obj=None):
        return False
