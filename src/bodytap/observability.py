"""Observability setup - Logfire configuration.

We use logfire.info/warning/error/debug directly instead of Python's
logging module. Every log line made while forwarding lands inside the
"proxy.forward" span of the transaction that produced it.
"""

import logfire


def configure(service_name: str = "bodytap", debug: bool = False) -> None:
    """Configure Logfire for observability.

    Args:
        service_name: Name to identify this service in traces.
        debug: If True, show debug lines on the console. Otherwise only
            warnings and errors are printed.
    """
    logfire.configure(
        service_name=service_name,
        scrubbing=False,  # Captured bodies are the point; don't redact them
        send_to_logfire="if-token-present",
        console=logfire.ConsoleOptions(min_log_level="debug" if debug else "warn"),
    )
