from datetime import timedelta

import pandas as pd
import plotly.express as px  # type: ignore
import plotly.graph_objects as go  # type: ignore
from django.db.models import Count
from django.utils import timezone

from .choices import Status, RiskLevel
from .models import Permit, GasTestRecord

RISK_ORDER = [RiskLevel.LOW.value, RiskLevel.MEDIUM.value, RiskLevel.HIGH.value]
RISK_COLORS = {'Low': '#3498db', 'Medium': '#f39c12', 'High': '#e74c3c'}
RUNNING = [Status.ACTIVE, Status.APPROVED]


def dashboard_stats(now=None):
    """Headline counters for the dashboard cards."""
    now = now or timezone.now()
    counts = dict(Permit.objects.order_by().values_list('status').annotate(n=Count('id')))
    by_status = {status.value: counts.get(status.value, 0) for status in Status}
    running = Permit.objects.filter(status__in=RUNNING)
    return {
        'total': sum(by_status.values()),
        'by_status': by_status,
        'active': by_status[Status.ACTIVE],
        'awaiting_review': by_status[Status.PENDING] + by_status[Status.ENGINEERING_REVIEW],
        'closure_requested': running.filter(closure_requested=True).count(),
        'expiring_soon': running.filter(valid_until__gt=now, valid_until__lte=now + timedelta(hours=24)).count(),
        'overdue': running.filter(valid_until__lte=now).count(),
    }


def _counts(series):
    return {str(key): int(value) for key, value in series.items()}


def analytics_summary():
    df = pd.DataFrame(list(Permit.objects.values('ptw_type', 'risk_level', 'status', 'created_at')))
    if df.empty:
        return {'no_data': True, 'total': 0}

    df['month'] = pd.to_datetime(df['created_at'], utc=True).dt.strftime('%Y-%m')
    by_type = df['ptw_type'].value_counts()
    by_risk = df['risk_level'].value_counts().reindex(RISK_ORDER, fill_value=0)
    monthly = df.groupby('month').size().sort_index()

    crosstab = pd.crosstab(df['ptw_type'], df['risk_level'])
    crosstab = crosstab.reindex(columns=RISK_ORDER, fill_value=0)

    gas = pd.DataFrame(list(GasTestRecord.objects.values('oxygen')))
    if gas.empty:
        gas_out_of_range = 0
    else:
        oxygen = gas['oxygen'].astype(float)
        gas_out_of_range = int(((oxygen < 19.5) | (oxygen > 23.5)).sum())

    # === Permits by type, split by risk ===
    stacked = crosstab.reset_index().melt(id_vars='ptw_type', var_name='risk_level', value_name='count')
    type_chart = px.bar(
        stacked, x='ptw_type', y='count', color='risk_level',
        color_discrete_map=RISK_COLORS, title="Permits by Type and Risk Level", height=450,
    )
    type_chart.update_layout(xaxis_title="Permit Type", yaxis_title="Permits", legend_title="Risk")

    # === Monthly volume ===
    trend = go.Figure(data=go.Scatter(x=list(monthly.index), y=[int(v) for v in monthly.values],
                                      mode='lines+markers', line=dict(width=3)))
    trend.update_layout(title="Permits Raised per Month", xaxis_title="Month", yaxis_title="Permits")

    return {
        'no_data': False,
        'total': int(len(df)),
        'by_type': _counts(by_type),
        'by_risk': _counts(by_risk),
        'by_status': _counts(df['status'].value_counts()),
        'monthly': _counts(monthly),
        'type_risk_matrix': {
            ptw_type: {risk: int(row[risk]) for risk in RISK_ORDER}
            for ptw_type, row in crosstab.iterrows()
        },
        'gas_tests_out_of_range': gas_out_of_range,
        'charts': {
            'type_risk': type_chart.to_html(full_html=False, include_plotlyjs='cdn'),
            'monthly_trend': trend.to_html(full_html=False, include_plotlyjs='cdn'),
        },
    }
