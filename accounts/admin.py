from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.utils import timezone
from .models import CustomUser, UserProfile, ExpertProfile
from .forms import CustomUserCreationForm, CustomUserChangeForm

# User Admin (profiles are separate models)
class UserAdmin(BaseUserAdmin):
    add_form = CustomUserCreationForm
    form = CustomUserChangeForm
    model = CustomUser
    list_display = ("email", "is_email_verified", "is_staff", "is_superuser")
    list_filter = ("is_email_verified", "is_staff", "is_superuser")
    search_fields = ("email",)
    ordering = ("email",)
    fieldsets = (
        (None, {"fields": ("email", "password")}),
        ("Email Verification", {"fields": ("is_email_verified",)}),
        ("Permissions", {"fields": ("is_active", "is_staff", "is_superuser", "groups", "user_permissions")}),
        ("Important dates", {"fields": ("last_login", "date_joined")}),
    )
    add_fieldsets = (
        (None, {"classes": ("wide",), "fields": ("email", "password1", "password2")}),
    )

# Customer Profile Admin
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ('first_name', 'last_name', 'email_display', 'default_currency')
    search_fields = ('first_name', 'last_name', 'user__email')
    readonly_fields = ('role', 'email_display')
    fieldsets = (
        ('User Information', {
            'fields': ('user', 'email_display', 'role')
        }),
        ('Personal Information', {
            'fields': ('first_name', 'last_name', 'default_currency')
        }),
    )

    def email_display(self, obj):
        return obj.user.email
    email_display.short_description = 'Email'

# Expert Profile Admin
class ExpertProfileAdmin(admin.ModelAdmin):
    list_display = ('first_name', 'last_name', 'email_display', 'consultation_status', 'consultation_status_updated_at')
    list_filter = ('consultation_status',)
    search_fields = ('first_name', 'last_name', 'user__email')
    readonly_fields = ('role', 'email_display', 'consultation_status_updated_at')
    fieldsets = (
        ('User Information', {
            'fields': ('user', 'email_display', 'role')
        }),
        ('Basic Information', {
            'fields': ('first_name', 'last_name')
        }),
        ('Consultation', {
            'fields': ('consultation_status', 'consultation_status_updated_at'),
            'description': 'BUSY while at least one consultation is connected. Settlement frees the expert automatically.'
        }),
        ('Platform Fee', {
            'fields': ('platform_fee_config',),
            'classes': ('collapse',),
            'description': 'Format: {"default_fee_percent": 10.0, "fee_by_type": {"<TYPE>": 12.0}, "fee_by_category": {"<CATEGORY>": 15.0}}. Category wins over type, type wins over default.'
        }),
    )
    actions = ['mark_free']

    def email_display(self, obj):
        return obj.user.email
    email_display.short_description = 'Email'

    def mark_free(self, request, queryset):
        """Force selected experts back to FREE (e.g. after a stuck call)"""
        updated = queryset.update(
            consultation_status=ExpertProfile.CONSULTATION_FREE,
            consultation_status_updated_at=timezone.now(),
        )
        self.message_user(request, f"{updated} expert(s) marked as free.")
    mark_free.short_description = "Mark selected experts as FREE"

admin.site.register(CustomUser, UserAdmin)
admin.site.register(UserProfile, UserProfileAdmin)
admin.site.register(ExpertProfile, ExpertProfileAdmin)
