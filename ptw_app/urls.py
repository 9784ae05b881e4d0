from django.urls import path
from . import views

urlpatterns = [
    # Permits
    path('permits/', views.PermitListView.as_view(), name='permit_list'),
    path('permits/export/csv/', views.PermitRegisterCsvView.as_view(), name='permit_register_csv'),
    path('permits/stats/dashboard/', views.DashboardStatsView.as_view(), name='dashboard_stats'),
    path('permits/<int:pk>/', views.PermitDetailView.as_view(), name='permit_detail'),

    # Workflow
    path('permits/<int:pk>/transitions/<slug:event>/', views.PermitTransitionView.as_view(), name='permit_transition'),
    path('permits/<int:pk>/actions/', views.PermitActionsView.as_view(), name='permit_actions'),
    path('permits/<int:pk>/audit-logs/', views.PermitAuditView.as_view(), name='permit_audit'),

    # Exports
    path('permits/<int:pk>/export/<slug:fmt>/', views.PermitExportView.as_view(), name='permit_export'),

    # Child records: gas-tests, checklists, handovers, certificates, signatures, documents
    path('permits/<int:pk>/<slug:kind>/', views.PermitChildrenView.as_view(), name='permit_children'),

    # Analytics
    path('analytics/summary/', views.AnalyticsSummaryView.as_view(), name='analytics_summary'),

    # Directories
    path('contractors/', views.ContractorListView.as_view(), name='contractor_list'),
    path('contractors/<int:pk>/', views.ContractorDetailView.as_view(), name='contractor_detail'),
    path('locations/', views.LocationListView.as_view(), name='location_list'),
    path('locations/<int:pk>/', views.LocationDetailView.as_view(), name='location_detail'),
    path('users/', views.UserListView.as_view(), name='user_list'),
    path('users/<int:pk>/', views.UserDetailView.as_view(), name='user_detail'),
]
