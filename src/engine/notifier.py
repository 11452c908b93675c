# src/engine/notifier.py
"""
Fire-and-forget notifications about finished scan jobs.
"""
import logging
import threading

import httpx

from engine.config import WEBHOOK_TIMEOUT, WEBHOOK_URL


class Notifier:
    def notify(self, external_ref: dict, summary: dict):
        raise NotImplementedError

    def notify_async(self, external_ref: dict, summary: dict):
        """Deliver in the background; failures are logged and never reach the pipeline."""
        def deliver():
            try:
                self.notify(external_ref, summary)
            except Exception as e:
                logging.warning(f"[job_id={external_ref.get('job_id')}] Notification failed: {e}")

        thread = threading.Thread(target=deliver, name="scan-notify", daemon=True)
        thread.start()
        return thread


class LogNotifier(Notifier):
    def notify(self, external_ref: dict, summary: dict):
        logging.info(
            f"[job_id={external_ref.get('job_id')}] Scan finished with status={external_ref.get('status')} "
            f"total_findings={(summary or {}).get('total_findings', 0)}"
        )


class WebhookNotifier(Notifier):
    def __init__(self, url: str, timeout: float = WEBHOOK_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def notify(self, external_ref: dict, summary: dict):
        response = httpx.post(
            self.url,
            json={"job": external_ref, "summary": summary},
            timeout=self.timeout,
        )
        response.raise_for_status()
        logging.info(f"[job_id={external_ref.get('job_id')}] Webhook delivered to {self.url} ({response.status_code})")


def notifier_from_config(url: str = WEBHOOK_URL) -> Notifier:
    return WebhookNotifier(url) if url else LogNotifier()
