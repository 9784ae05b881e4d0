from django.core.management.base import BaseCommand

from ptw_app.services import PermitService


class Command(BaseCommand):
    help = "Marks active/approved permits whose validity window has ended as expired"

    def handle(self, *args, **opts):
        expired = PermitService().expire_overdue()
        for permit in expired:
            self.stdout.write(f"  {permit.permit_number} expired (valid until {permit.valid_until:%Y-%m-%d %H:%M})")
        self.stdout.write(self.style.SUCCESS(f"{len(expired)} permit(s) expired"))
