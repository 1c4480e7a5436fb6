"""
Named field sets and their diff, used to describe what changed in an event.

A field value is a list of strings; multi-valued fields (attendees) compare
as sets.
"""

from dataclasses import dataclass, field

Fields = dict[str, list[str]]


@dataclass(slots=True)
class FieldDiff:
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.deleted)

    def all(self) -> list[str]:
        return self.added + self.updated + self.deleted


def diff(before: Fields, after: Fields) -> FieldDiff:
    result = FieldDiff()
    for name in sorted(after):
        if name not in before:
            result.added.append(name)
        elif sorted(before[name]) != sorted(after[name]):
            result.updated.append(name)
    result.deleted = sorted(name for name in before if name not in after)
    return result


def join(values: list[str]) -> str:
    return ", ".join(values)
