from django.contrib import admin
from django.contrib.auth.admin import UserAdmin
from .models import User

@admin.register(User)
class CustomUserAdmin(UserAdmin):
    list_display = ('username', 'email', 'phone', 'role', 'rating', 'total_reviews')
    list_filter = ('role', 'is_staff')
    search_fields = ('username', 'email', 'phone')

    fieldsets = UserAdmin.fieldsets + (
        ('Marketplace', {
            'fields': ('phone', 'role', 'rating', 'total_reviews')
        }),
    )
