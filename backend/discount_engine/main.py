from discount_engine.core.config import settings
from discount_engine.core.logging_config import configure_logging
from discount_engine.core.sentry import init_sentry


def configure_runtime() -> bool:
    """Set up logging and error reporting for a process embedding the engine.

    Returns whether Sentry reporting was enabled.
    """
    configure_logging(settings.log_json)
    return init_sentry()
