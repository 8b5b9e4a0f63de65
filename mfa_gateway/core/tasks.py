import logging
import threading

from mfa_gateway.core.gateway import Gateway

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 60


def _sweep_expired(gateway: Gateway, stop: threading.Event, interval: float):
    """Periodically drop expired setups and sessions; lookups also expire lazily."""
    while not stop.wait(interval):
        try:
            gateway.registry.sweep()
            gateway.sessions.sweep()
        except Exception as e:
            logger.warning(f"Expiry sweep error: {e}")


def start_background_tasks(gateway: Gateway, interval: float = SWEEP_INTERVAL_SECONDS) -> threading.Event:
    """Start the sweeper thread; set the returned event to stop it."""
    stop = threading.Event()
    thread = threading.Thread(
        target=_sweep_expired,
        args=(gateway, stop, interval),
        name="gateway-expiry-sweeper",
        daemon=True,
    )
    thread.start()
    logger.info(f"Expiry sweeper started (interval={interval}s)")
    return stop
