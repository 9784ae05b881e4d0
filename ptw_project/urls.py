from django.contrib import admin
from django.urls import path, include

from ptw_app import views

urlpatterns = [
    path('admin/', admin.site.urls),
    path('health/', views.health, name='health'),
    path('api/v1/', include('ptw_app.urls')),
]
