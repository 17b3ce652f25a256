from django.conf import settings
from django.conf.urls.static import static
from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path('django-admin/', admin.site.urls),
    path('api/users/', include('users.urls')),
    path('api/wallet/', include('wallet.urls')),
    path('api/jobs/', include('jobs.urls')),
    path('api/jobs/<int:job_id>/milestones/', include('milestones.urls')),
    path('api/activity/', include('activity.urls')),
    path('api/admin/', include('admin_dashboard.urls')),
] + static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)
