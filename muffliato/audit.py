"""
Append-only audit log of operations that changed the store.

Each line of .muffliato/audit.jsonl is one JSON object:

    {"ts": "...", "user": "<email>", "uuid": "<user id>", "op": "<operation>", ...}

Failing to record an event is logged and otherwise ignored: the operation
that triggered it has already happened and must not be reported as failed.
"""

import datetime
import json
import logging
import pathlib
import typing

import attr

log = logging.getLogger(__name__)

Event = typing.Dict[str, typing.Any]


def timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


@attr.s(frozen=True, kw_only=True)
class AuditLog:
    path: pathlib.Path = attr.ib()
    user: str = attr.ib(default='')
    user_id: str = attr.ib(default='')

    def record(self, operation: str, **fields: typing.Any) -> None:
        event: Event = {'ts': timestamp(), 'user': self.user, 'uuid': self.user_id, 'op': operation}
        event.update({key: value for key, value in fields.items() if value not in (None, '', [], ())})
        try:
            line = json.dumps(event, default=str, sort_keys=False)
            with self.path.open('a', encoding='utf-8') as handle:
                handle.write(line + '\n')
        except (OSError, TypeError, ValueError) as error:
            log.warning(f"Could not record {operation} in the audit log {self.path}: {error}")

    def entries(self) -> typing.List[Event]:
        if not self.path.exists():
            return []
        events = []
        for number, line in enumerate(self.path.read_text(encoding='utf-8').splitlines(), 1):
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except ValueError:
                log.warning(f"Skipping malformed audit log line {number} in {self.path}")
        return events
