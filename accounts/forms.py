from django import forms
from django.contrib.auth.forms import UserCreationForm, UserChangeForm
from .models import CustomUser

class CustomUserCreationForm(UserCreationForm):
    """Admin creation form keyed on email (there is no username field)"""
    email = forms.EmailField(required=True)

    class Meta:
        model = CustomUser
        fields = ("email",)

    def clean_email(self):
        return self.cleaned_data["email"].lower().strip()

class CustomUserChangeForm(UserChangeForm):
    class Meta:
        model = CustomUser
        fields = ("email",)
