import uuid

from django.db import models
from django.contrib.auth.models import AbstractUser


class User(AbstractUser):
    """Extended user model keyed by UUID, logging in with email"""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True)

    class Meta:
        db_table = 'users'

    def __str__(self):
        return f"{self.username} <{self.email}>"
