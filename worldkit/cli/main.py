"""CLI entry point for worldkit."""

from __future__ import annotations

import os
import sys

import fire

from worldkit.exceptions import ConfigurationError, ProvisioningError, TeardownError
from worldkit.logging import configure_logging


def handle_error(error: Exception, prefix: str, exit_code: int, debug_mode: bool) -> None:
    """Print an error and exit, or re-raise it in debug mode.

    Parameters
    ----------
    error : Exception
        The error that was raised
    prefix : str
        Human-readable error category
    exit_code : int
        Process exit status
    debug_mode : bool
        Whether debug mode is enabled

    Raises
    ------
    Exception
        Re-raised if debug mode is enabled
    """
    if debug_mode:
        raise error

    print(f"{prefix}: {error}", file=sys.stderr)
    sys.exit(exit_code)


def main() -> None:
    """Entry point for the Fire CLI with graceful error handling.

    Fire maps the methods of ``Worldkit`` to commands. Set WORLDKIT_DEBUG=1 to
    get full tracebacks instead of one-line error messages.
    """
    from worldkit.__main__ import Worldkit

    configure_logging(verbose="--verbose" in sys.argv)
    debug_mode = os.environ.get("WORLDKIT_DEBUG") == "1"

    try:
        fire.Fire(Worldkit)
    except ConfigurationError as e:
        handle_error(e, "Configuration error", 2, debug_mode)
    except ProvisioningError as e:
        handle_error(e, "Provisioning failed", 1, debug_mode)
    except TeardownError as e:
        handle_error(e, "Teardown failed", 1, debug_mode)
