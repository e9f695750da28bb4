"""
flowops/targets/postgres.py - PostgreSQL password rotation.

The database password lives in two secrets: the database's own
(postgres-secrets / POSTGRES_PASSWORD) and the application's connection
settings (n8n-secrets / DB_POSTGRESDB_PASSWORD). Both receive the same value,
then the database and the application are restarted in that order.
"""
import logging

from flowops.backends import SecretPatch
from flowops.generators import generate_password
from flowops.targets import RotationContext, RotationOperation, restart_and_wait

log = logging.getLogger(__name__)

PASSWORD_LENGTH = 32


class PostgresPasswordRotation(RotationOperation):

    def apply(self, ctx: RotationContext) -> dict[str, str]:
        new_password = generate_password(PASSWORD_LENGTH)
        ns = ctx.config.namespace

        ctx.store.patch_fields(SecretPatch(ns, "postgres-secrets", {"POSTGRES_PASSWORD": new_password}))
        ctx.store.patch_fields(SecretPatch(ns, "n8n-secrets", {"DB_POSTGRESDB_PASSWORD": new_password}))

        restart_and_wait(ctx, self.target.dependent_services)
        return {}
