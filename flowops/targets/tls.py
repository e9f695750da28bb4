"""
flowops/targets/tls.py - TLS certificate rotation through cert-manager.

Every Certificate in the application namespace is deleted and recreated from
its own spec, which makes cert-manager issue a fresh certificate. Clusters
without the letsencrypt-prod ClusterIssuer are skipped.
"""
import logging

from flowops.errors import RotationError
from flowops.polling import attempts_for, wait_until
from flowops.targets import CERTIFICATE_TIMEOUT, RotationContext, RotationOperation, SkipRotation

log = logging.getLogger(__name__)


class CertificateRotation(RotationOperation):

    def apply(self, ctx: RotationContext) -> dict[str, str]:
        authority = ctx.authority
        if authority is None or not authority.issuer_available():
            raise SkipRotation("cert-manager not found, skipping SSL certificate rotation")

        ns = ctx.config.namespace
        certificates = authority.list_certificates(ns)
        if not certificates:
            log.info(f"  No certificates found in namespace {ns}")

        failed = []
        for cert in certificates:
            log.info(f"  Rotating certificate: {cert}")
            try:
                authority.recreate_certificate(ns, cert)
            except Exception as e:
                log.error(f"  [FAIL] Could not recreate certificate {cert}: {e}")
                failed.append(cert)
                continue
            ready = wait_until(
                lambda: authority.certificate_ready(ns, cert),
                attempts=attempts_for(CERTIFICATE_TIMEOUT, ctx.poll_interval),
                interval=ctx.poll_interval,
                sleep=ctx.sleep,
                description=f"certificate {cert}",
            )
            if ready:
                log.info(f"  [OK] Certificate {cert} rotated")
            else:
                log.error(f"  [FAIL] Certificate {cert} not ready within {CERTIFICATE_TIMEOUT}s")
                failed.append(cert)

        if failed:
            raise RotationError(f"Certificates not rotated: {', '.join(failed)}")
        return {}
