from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from accounts.models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """Admin panel for custom User model"""

    list_display = [
        "username",
        "email",
        "is_active",
        "is_staff",
        "date_joined",
    ]

    list_filter = [
        "is_active",
        "is_staff",
        "date_joined",
    ]

    search_fields = [
        "username",
        "email",
    ]

    ordering = ("username",)
