from getpass import getpass

from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand, CommandError

from integrations.errors import RECOVERABLE_ERRORS
from integrations.services import build_api
from integrations.token_store import FileTokenStore


class Command(BaseCommand):
    help = "Συνδέεται στο rental API και αποθηκεύει το token τοπικά (ή το διαγράφει με --logout)."

    def add_arguments(self, parser):
        parser.add_argument("email", nargs="?", help="Admin email")
        parser.add_argument("--password", help="Password (asked interactively if omitted)")
        parser.add_argument("--logout", action="store_true", help="Forget the stored token")
        parser.add_argument("--token-file", help="Override STOREFRONT_TOKEN_FILE")

    def handle(self, *args, **opts):
        store = FileTokenStore(opts.get("token_file"))

        if opts["logout"]:
            async_to_sync(self._logout)(store)
            self.stdout.write(self.style.SUCCESS("🚪 Token removed."))
            return

        email = opts.get("email")
        if not email:
            raise CommandError("EMAIL is required (or use --logout).")
        password = opts.get("password") or getpass("Password: ")

        try:
            result = async_to_sync(self._login)(store, email, password)
        except RECOVERABLE_ERRORS as exc:
            raise CommandError(f"❌ Login failed: {exc}")

        self.stdout.write(self.style.SUCCESS(
            f"✅ Logged in as {result.user.name} ({result.user.role}). Token saved to {store.path}"
        ))

    async def _login(self, store, email, password):
        async with build_api(token_store=store, notify=self._notify) as api:
            return await api.login(email, password)

    async def _logout(self, store):
        async with build_api(token_store=store, notify=self._notify) as api:
            await api.logout()

    def _notify(self, message):
        self.stderr.write(self.style.WARNING(f"⚠️ {message}"))
