from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    CLIENT = 'client'
    FREELANCER = 'freelancer'
    ADMIN = 'admin'

    ROLE_CHOICES = (
        (CLIENT, 'Client'),
        (FREELANCER, 'Freelancer'),
        (ADMIN, 'Admin'),
    )

    phone = models.CharField(max_length=20, unique=True, null=True, blank=True)
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default=FREELANCER)
    # Running average over every review received
    rating = models.FloatField(default=0.0)
    total_reviews = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.username} ({self.role})"

    @property
    def display_name(self):
        return self.get_full_name() or self.username
