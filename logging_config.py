import logging
import sys


def setup_call_logging(level: int = logging.INFO, verbose: bool = False) -> None:
    """Configure console logging for the server and the local demo."""

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
            datefmt="%H:%M:%S",
        )
    )

    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    # Silence noisy loggers
    for name in (
        "uvicorn.access",
        "websockets",
        "websockets.protocol",
        "websockets.client",
        "websockets.server",
        "httpx",
        "httpcore",
        "openai",
        "google_genai",
    ):
        logging.getLogger(name).setLevel(logging.WARNING)

    # flight recorder mirrors every stage at INFO; only warnings unless verbose
    recorder_level = logging.INFO if verbose else logging.WARNING
    logging.getLogger("call_engine.logging.flight_recorder").setLevel(recorder_level)
    logging.getLogger("call_engine").setLevel(level)
