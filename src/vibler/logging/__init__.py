"""
Structured logging for Vibler.

Import directly from sub-modules:
    from vibler.logging.setup import setup_logging
    from vibler.logging.utilities import get_logger, log_with_context, log_exception
    from vibler.logging.context import set_log_context
"""
