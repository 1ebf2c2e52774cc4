from django.contrib.auth.models import AbstractBaseUser, PermissionsMixin
from django.db import models
from django.utils import timezone
from .managers import CustomUserManager

class CustomUser(AbstractBaseUser, PermissionsMixin):
    email = models.EmailField("email address", unique=True)
    is_staff = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    is_email_verified = models.BooleanField(default=False, help_text="Designates whether this user's email has been verified.")
    date_joined = models.DateTimeField(default=timezone.now)

    USERNAME_FIELD = "email"
    REQUIRED_FIELDS = []

    objects = CustomUserManager()

    class Meta:
        verbose_name = "User"
        verbose_name_plural = "Users"

    def save(self, *args, **kwargs):
        """Override save to ensure email is always stored in lowercase"""
        if self.email:
            self.email = self.email.lower().strip()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.email

    @property
    def profile(self):
        """Return the ExpertProfile if the user is an expert, else the UserProfile"""
        try:
            return self.expert_profile
        except ExpertProfile.DoesNotExist:
            try:
                return self.user_profile
            except UserProfile.DoesNotExist:
                return None

# Profile Models
class UserProfile(models.Model):
    """Profile for customers who pay for consultations"""
    ROLE_CHOICES = [
        ('user', 'User'),
    ]

    user = models.OneToOneField("accounts.CustomUser", on_delete=models.CASCADE, related_name="user_profile")
    first_name = models.CharField(max_length=150)
    last_name = models.CharField(max_length=150)
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default='user', editable=False)  # Not changeable
    default_currency = models.CharField(max_length=3, default="INR")

    class Meta:
        verbose_name = "User Profile"
        verbose_name_plural = "User Profiles"

    @property
    def party_id(self) -> str:
        """Identifier this customer appears under in call timelines."""
        return str(self.user_id)

    def __str__(self):
        return f"{self.first_name} {self.last_name} ({self.user.email})"


class ExpertProfile(models.Model):
    """Profile for experts who sell pay-per-minute consultations"""
    ROLE_CHOICES = [
        ('expert', 'Expert'),
    ]

    CONSULTATION_FREE = 'FREE'
    CONSULTATION_BUSY = 'BUSY'
    CONSULTATION_STATUSES = [
        (CONSULTATION_FREE, 'Free'),
        (CONSULTATION_BUSY, 'Busy'),
    ]

    user = models.OneToOneField("accounts.CustomUser", on_delete=models.CASCADE, related_name="expert_profile")
    first_name = models.CharField(max_length=150)
    last_name = models.CharField(max_length=150)
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default='expert', editable=False)  # Not changeable

    # Busy flag: BUSY while at least one consultation is CONNECTED
    consultation_status = models.CharField(max_length=10, choices=CONSULTATION_STATUSES, default=CONSULTATION_FREE)
    consultation_status_updated_at = models.DateTimeField(blank=True, null=True)

    # Platform fee overrides (JSON for flexibility)
    platform_fee_config = models.JSONField(default=dict, blank=True)
    # Structure: {
    #   "default_fee_percent": 10.0,
    #   "fee_by_type": {"ON_DEMAND_CONSULTATION": 12.0},
    #   "fee_by_category": {"TAROT": 15.0}
    # }

    class Meta:
        verbose_name = "Expert Profile"
        verbose_name_plural = "Expert Profiles"

    @property
    def party_id(self) -> str:
        """Identifier this expert appears under in call timelines."""
        return str(self.user_id)

    @property
    def is_busy(self) -> bool:
        return self.consultation_status == self.CONSULTATION_BUSY

    def __str__(self):
        return f"{self.first_name} {self.last_name} ({self.user.email})"
