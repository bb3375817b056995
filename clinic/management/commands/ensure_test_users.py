from django.contrib.auth.hashers import make_password
from django.core.management.base import BaseCommand

from clinic.models import AssistantLink, User

TEST_SET = [
    ("admin1", User.ROLE_ADMIN),
    ("dietitian1", User.ROLE_DIETITIAN),
    ("dietitian2", User.ROLE_DIETITIAN),
    ("assistant1", User.ROLE_ASSISTANT),
]


class Command(BaseCommand):
    help = "Ensure test users exist with password=123456 (idempotent)."

    def add_arguments(self, parser):
        parser.add_argument("--password", default="123456")

    def handle(self, *args, **opts):
        password = make_password(opts["password"])
        for username, role in TEST_SET:
            u, created = User.objects.get_or_create(
                username=username,
                defaults={"role": role, "password": password, "is_active": True},
            )
            if not created:
                # reset password, role and active flag
                u.password = password
                u.role = role
                u.is_active = True
                u.save(update_fields=["password", "role", "is_active"])
            self.stdout.write(self.style.SUCCESS(f"ok: {username} ({role})"))

        assistant = User.objects.get(username="assistant1")
        dietitian = User.objects.get(username="dietitian1")
        AssistantLink.objects.get_or_create(assistant=assistant, dietitian=dietitian)
        self.stdout.write(self.style.SUCCESS("All test users ensured."))
