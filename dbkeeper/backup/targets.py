"""
Target registry - the databases a run backs up.

Targets come from a JSON file:

    {
        "default_host": "127.0.0.1",
        "targets": [
            {"alias": "one", "port": 3306, "user": "backup",
             "password": "...", "database": "shop"},
            {"alias": "three", "port": 3307, "user": "backup",
             "password_encrypted": "gAAAA...", "database": "stats",
             "hours": [0, 1, 2, 3]}
        ]
    }

A target with ``hours`` is only backed up by runs starting in one of those hours.
"""

import re
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from dbkeeper.config import ConfigurationError
from dbkeeper.utils.crypto import PasswordCipher

logger = logging.getLogger(__name__)

ALIAS_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]*$')

REQUIRED_FIELDS = ('alias', 'port', 'user', 'database')
KNOWN_FIELDS = set(REQUIRED_FIELDS) | {'host', 'password', 'password_encrypted', 'hours', 'extra_args'}


@dataclass(frozen=True)
class Target:
    """One database to back up."""
    alias: str
    host: str
    port: int
    user: str
    credential: str = field(repr=False)
    database_name: str
    hours: Optional[Tuple[int, ...]] = None
    extra_args: Tuple[str, ...] = ()

    def is_due(self, at: datetime) -> bool:
        """Check whether this target takes part in a run started at ``at``."""
        return self.hours is None or at.hour in self.hours


class TargetRegistry:
    """
    Holds the static, ordered list of backup targets.

    Iteration order is the order the targets were given in.
    """

    def __init__(self, targets: Sequence[Target]):
        seen = set()
        for target in targets:
            if target.alias in seen:
                raise ConfigurationError(f"Duplicate target alias: {target.alias}")
            seen.add(target.alias)

        self._targets = list(targets)

    def list_targets(self, at: Optional[datetime] = None) -> List[Target]:
        """
        Return the targets for a run.

        Args:
            at: Run start time; targets restricted to other hours are skipped.
                When None every target is returned.
        """
        if at is None:
            return list(self._targets)

        due = []
        for target in self._targets:
            if target.is_due(at):
                due.append(target)
            else:
                logger.info(f"Target {target.alias} not scheduled for hour {at.hour}, skipping")
        return due

    def __len__(self):
        return len(self._targets)

    @classmethod
    def from_file(cls, path: str, default_host: str = '127.0.0.1',
                  cipher: Optional[PasswordCipher] = None) -> 'TargetRegistry':
        """
        Load targets from a JSON file.

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        try:
            raw = json.loads(Path(path).read_text())
        except FileNotFoundError:
            raise ConfigurationError(f"Targets file not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Targets file is not valid JSON ({path}): {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read targets file {path}: {e}")

        return cls.from_config(raw, default_host=default_host, cipher=cipher)

    @classmethod
    def from_config(cls, raw, default_host: str = '127.0.0.1',
                    cipher: Optional[PasswordCipher] = None) -> 'TargetRegistry':
        """Build a registry from already-parsed configuration data."""
        if isinstance(raw, dict):
            default_host = raw.get('default_host') or default_host
            entries = raw.get('targets', [])
        else:
            entries = raw

        if not isinstance(entries, list):
            raise ConfigurationError("'targets' must be a list of target objects")

        targets = [
            parse_target(entry, index, default_host, cipher)
            for index, entry in enumerate(entries)
        ]
        return cls(targets)


def parse_target(entry, index: int, default_host: str,
                 cipher: Optional[PasswordCipher] = None) -> Target:
    """
    Validate one target entry.

    Raises:
        ConfigurationError: Naming the target alias (or index) on any problem
    """
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Target #{index} must be an object")

    label = entry.get('alias') or f"#{index}"

    missing = [name for name in REQUIRED_FIELDS if entry.get(name) in (None, '')]
    if missing:
        raise ConfigurationError(f"Target {label}: missing required fields: {', '.join(missing)}")

    unknown = set(entry) - KNOWN_FIELDS
    if unknown:
        raise ConfigurationError(f"Target {label}: unknown fields: {', '.join(sorted(unknown))}")

    alias = str(entry['alias'])
    if not ALIAS_PATTERN.match(alias):
        raise ConfigurationError(
            f"Target {label}: alias may only contain letters, digits, '_', '-' and '.'"
        )

    port = entry['port']
    if isinstance(port, bool):
        raise ConfigurationError(f"Target {alias}: port must be an integer, got {port!r}")
    try:
        port = int(port)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Target {alias}: port must be an integer, got {port!r}")
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"Target {alias}: port out of range: {port}")

    return Target(
        alias=alias,
        host=str(entry.get('host') or default_host),
        port=port,
        user=str(entry['user']),
        credential=_resolve_credential(entry, alias, cipher),
        database_name=str(entry['database']),
        hours=_parse_hours(entry.get('hours'), alias),
        extra_args=_parse_extra_args(entry.get('extra_args'), alias),
    )


def _resolve_credential(entry: dict, alias: str, cipher: Optional[PasswordCipher]) -> str:
    has_plain = 'password' in entry
    has_encrypted = 'password_encrypted' in entry

    if has_plain == has_encrypted:
        raise ConfigurationError(
            f"Target {alias}: exactly one of 'password' or 'password_encrypted' is required"
        )

    if has_plain:
        if entry['password'] is None:
            raise ConfigurationError(f"Target {alias}: password must not be null")
        return str(entry['password'])

    if cipher is None:
        raise ConfigurationError(
            f"Target {alias}: password is encrypted but DBKEEPER_PASSPHRASE/DBKEEPER_SALT are not set"
        )

    try:
        return cipher.decrypt(str(entry['password_encrypted']))
    except ValueError:
        raise ConfigurationError(f"Target {alias}: failed to decrypt password")


def _parse_hours(hours, alias: str) -> Optional[Tuple[int, ...]]:
    if hours is None:
        return None

    if not isinstance(hours, list) or not all(
        isinstance(h, int) and not isinstance(h, bool) and 0 <= h <= 23 for h in hours
    ):
        raise ConfigurationError(f"Target {alias}: hours must be a list of integers 0-23")

    return tuple(sorted(set(hours)))


def _parse_extra_args(extra_args, alias: str) -> Tuple[str, ...]:
    if extra_args is None:
        return ()

    if not isinstance(extra_args, list) or not all(isinstance(a, str) for a in extra_args):
        raise ConfigurationError(f"Target {alias}: extra_args must be a list of strings")

    return tuple(extra_args)
