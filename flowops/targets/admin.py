"""
flowops/targets/admin.py - Admin password rotation for n8n and Grafana.

Both are operator-facing logins, so the new password is revealed in the run
log for the operator to capture.
"""
from flowops.backends import SecretPatch
from flowops.generators import generate_password
from flowops.targets import RotationContext, RotationOperation, restart_and_wait

ADMIN_PASSWORD_LENGTH = 16


class AdminPasswordRotation(RotationOperation):
    """Writes one password field of one secret, then restarts the owning service."""

    secret_name: str = ""
    field_name: str = ""
    display_name: str = ""

    def namespace(self, ctx: RotationContext) -> str:
        return ctx.config.namespace

    def apply(self, ctx: RotationContext) -> dict[str, str]:
        new_password = generate_password(ADMIN_PASSWORD_LENGTH)
        ctx.store.patch_fields(
            SecretPatch(self.namespace(ctx), self.secret_name, {self.field_name: new_password})
        )
        restart_and_wait(ctx, self.target.dependent_services)
        return {self.display_name: new_password}


class N8nAdminRotation(AdminPasswordRotation):
    secret_name = "n8n-secrets"
    field_name = "N8N_BASIC_AUTH_PASSWORD"
    display_name = "n8n admin password"


class GrafanaAdminRotation(AdminPasswordRotation):
    secret_name = "grafana-secrets"
    field_name = "admin-password"
    display_name = "Grafana admin password"

    def namespace(self, ctx: RotationContext) -> str:
        return ctx.config.monitoring_namespace
