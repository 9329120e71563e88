# /gastracker/core/decorators.py
# Reusable decorators for read-only network calls.
from tenacity import retry, stop_after_attempt, wait_exponential, before_sleep_log
from gastracker.core.logger import get_logger
import logging

log = get_logger(__name__)

# Not applied to connect(); a failed connect is retried on the next orchestrator tick.
retriable_network_call = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    before_sleep=before_sleep_log(log, logging.WARNING),
    reraise=True
)
