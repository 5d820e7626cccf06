"""
Lock grant: the user-consented capability the engine needs before it may lock
the session or arm alarms.

The grant is a small record in the data directory, bound to the uid that gave
consent. It can disappear at any moment (``lockdown revoke``, a wiped data
dir), so it is re-read on every query and never cached.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from loguru import logger
from pydantic import ValidationError
from rich.prompt import Confirm

from lockdown.schema import GrantOutcome, LockGrant, PrivilegeStatus
from lockdown.settings import settings
from lockdown.utils.state import write_json_atomic

LOCK_REASON = "Lockdown needs Device Admin privileges to lock your screen."
SCHEDULE_REASON = "Lockdown needs Device Admin privileges to schedule screen locks."

ConsentPrompt = Callable[[str], bool]


def confirm_prompt(reason: str) -> bool:
    """Default consent flow: an interactive yes/no question on the terminal."""
    return Confirm.ask(f"[bold yellow]{reason}[/bold yellow]\nAllow locking this session?")


class PrivilegeGate:
    def __init__(
        self,
        grant_file: Path | None = None,
        prompt: ConsentPrompt = confirm_prompt,
    ):
        self.grant_file = grant_file or settings.grant_file
        self.prompt = prompt

    def _read_grant(self) -> LockGrant | None:
        if not self.grant_file.exists():
            return None
        try:
            with open(self.grant_file) as f:
                return LockGrant(**json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning(f"Ignoring unreadable grant record {self.grant_file}: {e}")
            return None

    def is_granted(self) -> PrivilegeStatus:
        grant = self._read_grant()
        if grant is not None and grant.uid == os.getuid():
            return PrivilegeStatus.GRANTED
        return PrivilegeStatus.NOT_GRANTED

    def request_grant(self, reason: str) -> GrantOutcome:
        """Runs the consent flow once. The caller decides whether to try again."""
        try:
            accepted = self.prompt(reason)
        except (KeyboardInterrupt, EOFError):
            logger.info("Grant request cancelled.")
            return GrantOutcome.CANCELLED

        if not accepted:
            logger.info("Grant request denied.")
            return GrantOutcome.DENIED

        grant = LockGrant(
            uid=os.getuid(), granted_at=datetime.now(timezone.utc), reason=reason
        )
        try:
            write_json_atomic(self.grant_file, grant.model_dump(mode="json"))
        except OSError as e:
            logger.error(f"Could not record grant: {e}")
            return GrantOutcome.DENIED

        logger.info("Lock grant recorded.")
        return GrantOutcome.GRANTED

    def revoke(self) -> bool:
        """Removes the grant. Returns True if one was present."""
        try:
            self.grant_file.unlink()
        except FileNotFoundError:
            return False
        logger.warning("Lock grant revoked.")
        return True
