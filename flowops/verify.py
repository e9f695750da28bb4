"""
flowops/verify.py - Post-rotation health verification.

Checks, without retries:
  - no pod in the application namespace is outside the Running phase
  - every configured health endpoint answers successfully
"""
import logging

from flowops.backends import WorkloadController
from flowops.config import RotationConfig
from flowops.models import VerificationResult

log = logging.getLogger(__name__)


def verify_services(controller: WorkloadController, config: RotationConfig) -> VerificationResult:
    log.info("Verifying services after credential rotation...")
    failing: list[str] = []

    try:
        not_running = controller.non_running_pods(config.namespace)
    except Exception as e:
        log.error(f"  [FAIL] Could not list pods in {config.namespace}: {e}")
        failing.append(f"pods in {config.namespace}: {e}")
    else:
        if not_running:
            log.error(f"  [FAIL] Some pods are not running: {' '.join(not_running)}")
            failing.append(f"pods not running: {' '.join(not_running)}")

    for endpoint in config.health_endpoints:
        try:
            healthy = controller.probe(endpoint, config.namespace)
        except Exception as e:
            log.error(f"  [FAIL] Health probe {endpoint} raised: {e}")
            healthy = False
        if healthy:
            log.info(f"  [OK] Service endpoint healthy: {endpoint}")
        else:
            log.error(f"  [FAIL] Service endpoint unhealthy: {endpoint}")
            failing.append(f"endpoint {endpoint}")

    if not failing:
        log.info("  [OK] All services verified")
    return VerificationResult(passed=not failing, failing_checks=failing)
