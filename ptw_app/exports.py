"""
Permit export renderers (Excel, PDF, CSV).

Renderers read a permit and return bytes; they never write to it. Sub-payloads
stored as JSON are parsed leniently: anything malformed becomes an empty list.
Any failure while rendering surfaces as a single ExportError.
"""
import json
import logging
from io import BytesIO

import pandas as pd
from django.template.loader import get_template
from django.utils import timezone
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment

from .exceptions import ExportError
from .workflow import effective_status, mandatory_checklist

logger = logging.getLogger(__name__)

EXCEL_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
PDF_CONTENT_TYPE = 'application/pdf'
CSV_CONTENT_TYPE = 'text/csv'

HEADER_FILL = PatternFill('solid', fgColor='2C3E50')
SECTION_FILL = PatternFill('solid', fgColor='D6EAF8')

CSV_COLUMNS = [
    'permit_number', 'ptw_type', 'risk_level', 'status', 'location', 'contractor', 'work_entity',
    'valid_from', 'valid_until', 'personnel_count', 'hazard_count', 'site_test_required',
    'closure_requested', 'created_by', 'created_at',
]


def parse_json_list(value):
    if not value:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _person_name(entry):
    if isinstance(entry, dict):
        return entry.get('name') or json.dumps(entry, ensure_ascii=False)
    return str(entry)


def _local(value):
    if value is None:
        return None
    if timezone.is_aware(value):
        value = timezone.localtime(value)
    return value.replace(tzinfo=None)


def permit_snapshot(permit):
    """Plain-data view of a permit and its child records for the renderers."""
    now = timezone.now()
    personnel = [
        {'name': _person_name(p), 'role': p.get('role', '') if isinstance(p, dict) else ''}
        for p in parse_json_list(permit.personnel_list)
    ]
    return {
        'permit_number': permit.permit_number,
        'ptw_type': permit.ptw_type,
        'ptw_sub_type': permit.ptw_sub_type,
        'risk_level': permit.risk_level,
        'status': permit.status,
        'effective_status': effective_status(permit, now),
        'description': permit.description,
        'work_area': permit.work_area,
        'work_entity': permit.work_entity,
        'work_types': parse_json_list(permit.work_types),
        'equipment': parse_json_list(permit.equipment),
        'location': permit.location.name if permit.location_id else '',
        'contractor': permit.contractor.name if permit.contractor_id else '',
        'emergency_contact': permit.emergency_contact,
        'created_by': permit.created_by.full_name if permit.created_by_id else '',
        'personnel': personnel,
        'hazards': parse_json_list(permit.selected_hazards),
        'precautions': parse_json_list(permit.selected_precautions),
        'ppe': parse_json_list(permit.selected_ppe),
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
        'created_at': permit.created_at,
        'closure_requested': permit.closure_requested,
        'rejection_reason': permit.rejection_reason,
        'signatures': [
            {'role': s.role, 'signer_name': s.signer_name, 'signed_at': s.signed_at}
            for s in permit.signatures.all()
        ] if permit.pk else [],
        'gas_tests': [
            {'test_time': g.test_time, 'oxygen': g.oxygen, 'co2': g.co2, 'lel': g.lel,
             'toxic': g.toxic, 'co': g.co, 'tested_by': g.tested_by}
            for g in permit.gastestrecords.all()
        ] if permit.pk else [],
    }


# ----------------------------------------------------------------------
# Excel
# ----------------------------------------------------------------------
def _section(ws, row, title):
    cell = ws.cell(row=row, column=1, value=title)
    cell.font = Font(bold=True)
    for col in range(1, 7):
        ws.cell(row=row, column=col).fill = SECTION_FILL
    return row + 1


def _pairs(ws, row, pairs):
    for label, value in pairs:
        ws.cell(row=row, column=1, value=label).font = Font(bold=True)
        ws.cell(row=row, column=2, value=value)
        row += 1
    return row + 1


def _ticked(ws, row, items, other=''):
    for item in items:
        ws.cell(row=row, column=1, value='X').alignment = Alignment(horizontal='center')
        ws.cell(row=row, column=2, value=item if isinstance(item, str) else item.get('description', str(item)))
        row += 1
    if other:
        ws.cell(row=row, column=1, value='Other').font = Font(italic=True)
        ws.cell(row=row, column=2, value=other)
        row += 1
    if not items and not other:
        ws.cell(row=row, column=2, value='-')
        row += 1
    return row + 1


def render_excel(permit):
    try:
        snap = permit_snapshot(permit)
        wb = Workbook()
        ws = wb.active
        ws.title = 'Permit'
        ws.column_dimensions['A'].width = 24
        ws.column_dimensions['B'].width = 60
        for col in 'CDEF':
            ws.column_dimensions[col].width = 16

        title = ws.cell(row=1, column=1, value='PERMIT TO WORK')
        title.font = Font(bold=True, size=14, color='FFFFFF')
        for col in range(1, 7):
            ws.cell(row=1, column=col).fill = HEADER_FILL
        ws.cell(row=1, column=5, value='Kayıt No').font = Font(bold=True, color='FFFFFF')
        ws.cell(row=1, column=6, value=snap['permit_number']).font = Font(bold=True, color='FFFFFF')

        row = _section(ws, 3, 'Activity Information')
        row = _pairs(ws, row, [
            ('Permit Type', snap['ptw_type']),
            ('Sub Type', snap['ptw_sub_type']),
            ('Risk Level', snap['risk_level']),
            ('Status', snap['effective_status']),
            ('Contractor', snap['contractor']),
            ('Location', snap['location']),
            ('Work Area', snap['work_area']),
            ('Work Entity', snap['work_entity']),
            ('Description', snap['description']),
            ('Requested By', snap['created_by']),
            ('Emergency Contact', snap['emergency_contact']),
            ('Valid From', _local(snap['valid_from'])),
            ('Valid Until', _local(snap['valid_until'])),
            ('Site Gas Test Required', 'Yes' if snap['site_test_required'] else 'No'),
        ])

        row = _section(ws, row, 'Hazards')
        row = _ticked(ws, row, snap['hazards'], snap['other_hazards'])
        row = _section(ws, row, 'Precautions')
        row = _ticked(ws, row, snap['precautions'], snap['other_precautions'])
        row = _section(ws, row, 'Personal Protective Equipment')
        row = _ticked(ws, row, snap['ppe'], snap['other_ppe'])
        if snap['mandatory_checklist']:
            row = _section(ws, row, f"{snap['ptw_type']} Checklist")
            for item in snap['mandatory_checklist']:
                ws.cell(row=row, column=1, value='X' if item in snap['safety_checklist'] else '')
                ws.cell(row=row, column=2, value=item)
                row += 1
            row += 1

        row = _section(ws, row, 'Personnel')
        for person in snap['personnel']:
            ws.cell(row=row, column=1, value=person['role'])
            ws.cell(row=row, column=2, value=person['name'])
            row += 1
        row += 1

        if snap['gas_tests']:
            row = _section(ws, row, 'Gas Tests')
            for col, label in enumerate(['Time', 'Tested By', 'O2 %', 'CO2', 'LEL %', 'Toxic', 'CO'], start=1):
                ws.cell(row=row, column=col, value=label).font = Font(bold=True)
            row += 1
            for test in snap['gas_tests']:
                values = [_local(test['test_time']), test['tested_by'], test['oxygen'], test['co2'],
                          test['lel'], test['toxic'], test['co']]
                for col, value in enumerate(values, start=1):
                    ws.cell(row=row, column=col, value=float(value) if hasattr(value, 'as_tuple') else value)
                row += 1
            row += 1

        row = _section(ws, row, 'Approvals')
        for sig in snap['signatures']:
            ws.cell(row=row, column=1, value=sig['role'])
            ws.cell(row=row, column=2, value=sig['signer_name'])
            ws.cell(row=row, column=3, value=_local(sig['signed_at']))
            row += 1
        row += 1

        row = _section(ws, row, 'Completion / Cancellation')
        _pairs(ws, row, [
            ('Completed', 'X' if snap['status'] == 'completed' else ''),
            ('Cancelled', 'X' if snap['status'] == 'cancelled' else ''),
            ('Completed At', _local(snap['completed_at'])),
        ])

        buffer = BytesIO()
        wb.save(buffer)
        return buffer.getvalue()
    except Exception as exc:
        logger.exception("Excel export failed for permit %s", getattr(permit, 'permit_number', '?'))
        raise ExportError(f"Failed to generate Excel: {exc}", exc) from exc


# ----------------------------------------------------------------------
# PDF
# ----------------------------------------------------------------------
def _write_pdf(html):
    from weasyprint import HTML  # type: ignore
    return HTML(string=html).write_pdf()


def render_pdf(permit):
    try:
        template = get_template('ptw_app/permit_pdf.html')
        html = template.render({
            'permit': permit_snapshot(permit),
            'generated_at': timezone.now(),
        })
        return _write_pdf(html)
    except Exception as exc:
        logger.exception("PDF export failed for permit %s", getattr(permit, 'permit_number', '?'))
        raise ExportError(f"Failed to generate PDF: {exc}", exc) from exc


# ----------------------------------------------------------------------
# CSV register
# ----------------------------------------------------------------------
def render_csv(permits):
    try:
        rows = []
        for permit in permits:
            snap = permit_snapshot(permit)
            rows.append({
                'permit_number': snap['permit_number'],
                'ptw_type': snap['ptw_type'],
                'risk_level': snap['risk_level'],
                'status': snap['effective_status'],
                'location': snap['location'],
                'contractor': snap['contractor'],
                'work_entity': snap['work_entity'],
                'valid_from': snap['valid_from'].isoformat(),
                'valid_until': snap['valid_until'].isoformat(),
                'personnel_count': len(snap['personnel']),
                'hazard_count': len(snap['hazards']),
                'site_test_required': snap['site_test_required'],
                'closure_requested': snap['closure_requested'],
                'created_by': snap['created_by'],
                'created_at': snap['created_at'].isoformat() if snap['created_at'] else '',
            })
        df = pd.DataFrame(rows, columns=CSV_COLUMNS)
        return df.to_csv(index=False).encode('utf-8')
    except Exception as exc:
        logger.exception("CSV export failed")
        raise ExportError(f"Failed to generate CSV: {exc}", exc) from exc
