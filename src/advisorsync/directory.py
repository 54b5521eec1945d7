"""Summary: CRM person lookup used by auto-linking.

Importance: Lets sync and linking match mirror addresses to known persons.
Alternatives: Query the CRM persons table from inside the sync engine.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Protocol

from advisorsync.models import PersonRecord


class PersonDirectory(Protocol):
    """Summary: Resolves an email address to a CRM person.

    Importance: The only contract auto-linking depends on.
    Alternatives: Pass a plain dict of addresses to persons.
    """

    def find_by_email(self, email: str) -> PersonRecord | None:
        ...


class StaticPersonDirectory:
    """Summary: In-memory directory keyed by lower-cased address.

    Importance: Backs the CLI, API, and tests without a CRM database.
    Alternatives: Load persons from the CRM on every lookup.
    """

    def __init__(self, records: Iterable[PersonRecord] = ()) -> None:
        self._by_email: dict[str, PersonRecord] = {}
        for record in records:
            self._by_email.setdefault(record.email.strip().lower(), record)

    @classmethod
    def from_file(cls, path: Path) -> "StaticPersonDirectory":
        """Summary: Load person records from a JSON list.

        Importance: Lets operators seed auto-linking from an export.
        Alternatives: Read a CSV export instead.
        """

        if not path.exists():
            return cls()
        payload = json.loads(path.read_text(encoding="utf-8"))
        return cls(
            PersonRecord(
                person_id=str(item["person_id"]),
                email=item["email"],
                household_id=item.get("household_id"),
                name=item.get("name"),
            )
            for item in payload
        )

    def find_by_email(self, email: str) -> PersonRecord | None:
        return self._by_email.get(email.strip().lower())

    def __len__(self) -> int:
        return len(self._by_email)


def match_person(directory: PersonDirectory, addresses: Iterable[str]) -> PersonRecord | None:
    """Summary: Return the first person matching an ordered address list.

    Importance: Callers pass sender, then to, then cc so the match order is stable.
    Alternatives: Score every candidate and pick the most frequent.
    """

    for address in addresses:
        if not address:
            continue
        record = directory.find_by_email(address)
        if record is not None:
            return record
    return None
