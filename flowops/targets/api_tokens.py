"""
flowops/targets/api_tokens.py - API token and webhook secret rotation.

Tokens are not assumed to exist yet, so the n8n-api-tokens secret is written
whole (create or replace) instead of patched.
"""
from flowops.generators import generate_api_key, generate_password
from flowops.targets import RotationContext, RotationOperation

TOKENS_SECRET_NAME = "n8n-api-tokens"
WEBHOOK_SECRET_LENGTH = 64


class ApiTokenRotation(RotationOperation):

    def apply(self, ctx: RotationContext) -> dict[str, str]:
        webhook_secret = generate_password(WEBHOOK_SECRET_LENGTH)
        api_token = generate_api_key("n8n")
        ctx.store.create_or_replace(ctx.config.namespace, TOKENS_SECRET_NAME, {
            "WEBHOOK_SECRET": webhook_secret,
            "API_TOKEN": api_token,
        })
        return {"webhook secret": webhook_secret, "API token": api_token}
