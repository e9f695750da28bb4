"""
flowops/targets/aws_keys.py - AWS IAM access key rotation.

Ordering matters: create the new key, hand it to the cluster, wait for it to
become usable, and only then delete every other key of the user. At no point
does the user have zero valid keys.
"""
import logging

from flowops.backends import SecretPatch
from flowops.targets import RotationContext, RotationOperation, SkipRotation

log = logging.getLogger(__name__)

AWS_SECRET_NAME = "aws-credentials"


class AccessKeyRotation(RotationOperation):

    def apply(self, ctx: RotationContext) -> dict[str, str]:
        if ctx.keys is None:
            raise SkipRotation("AWS credentials not available, skipping AWS key rotation")
        user = ctx.keys.current_user()
        if not user:
            raise SkipRotation("Cannot determine current AWS user, skipping AWS key rotation")

        log.info(f"  Current AWS user: {user}")
        new_key = ctx.keys.create_access_key(user)
        new_key_id = new_key["AccessKeyId"]
        log.info(f"  New AWS access key created: {new_key_id}")

        revealed = {"AWS access key id": new_key_id}
        ns = ctx.config.namespace
        if ctx.store.exists(ns, AWS_SECRET_NAME):
            ctx.store.patch_fields(SecretPatch(ns, AWS_SECRET_NAME, {
                "AWS_ACCESS_KEY_ID": new_key_id,
                "AWS_SECRET_ACCESS_KEY": new_key["SecretAccessKey"],
            }))
            log.info("  [OK] AWS credentials updated in Kubernetes")
        else:
            # Nowhere to store it: the operator has to capture it from the log.
            revealed["AWS secret access key"] = new_key["SecretAccessKey"]

        grace = ctx.config.aws_key_grace_seconds
        log.info(f"  Waiting {grace} seconds before deleting old access keys...")
        ctx.sleep(grace)

        for old_key in ctx.keys.list_access_key_ids(user):
            if old_key == new_key_id:
                continue
            ctx.keys.delete_access_key(user, old_key)
            log.info(f"  Deleted old access key: {old_key}")
        return revealed
