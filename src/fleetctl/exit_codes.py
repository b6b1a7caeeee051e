"""Process exit codes shared by every ``fleetctl`` command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes reported by the CLI.

    ``VALIDATION`` covers bad input as well as unknown tenants/instances and
    slug conflicts, all of which are detected before any remote call.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    REMOTE = 4
