"""
Push of run metrics to a Prometheus Push Gateway.

Reporting is best effort: failures are logged and never change the outcome
of the run.
"""

import logging
from typing import Optional
from urllib.parse import quote

import requests

from mountain_backup.config import MetricsConfig


logger = logging.getLogger(__name__)

# Push Gateway answers 202 Accepted when it took the samples
ACCEPTED = 202


def format_metrics(success: bool, number_files: int) -> str:
    """Render the plaintext exposition body."""
    return (
        f"backup_success {1 if success else 0}\n"
        f"backup_number_files {number_files}\n"
    )


class MetricsReporter:
    """
    Reports success and item count of a run, at most once per process.
    """

    def __init__(self, config: MetricsConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.reported = False

    @property
    def push_url(self) -> str:
        host = self.config.push_gateway_host.rstrip('/')
        if '://' not in host:
            host = f"http://{host}"
        return f"{host}/metrics/job/backup/host/{quote(self.config.label_host, safe='')}"

    def report(self, success: bool, number_files: int) -> bool:
        """
        Push the run outcome.

        Returns:
            True if the gateway accepted the metrics
        """
        if self.reported:
            logger.debug("Metrics already reported")
            return False
        self.reported = True

        if not self.config.enabled:
            logger.info("Metrics disabled")
            return False

        body = format_metrics(success, number_files)

        try:
            response = self.session.post(
                self.push_url,
                data=body.encode('utf-8'),
                headers={'Content-Type': 'text/plain'},
                timeout=self.config.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Error pushing metrics to Prometheus Push Gateway: {e}")
            return False

        if response.status_code != ACCEPTED:
            logger.error(
                f"Error pushing metrics to Prometheus Push Gateway, received non OK "
                f"response, status: {response.status_code}, body: {response.text[:500]}"
            )
            return False

        logger.info("Pushed metrics")
        return True
