import logging
import typing

import attr

from .utils import NotFoundError, validate_key, validate_value

log = logging.getLogger(__name__)

Entry = typing.Tuple[str, str]


@attr.s(eq=True, repr=False)
class Ledger:
    """
    The decrypted credentials: an ordered mapping of names to values.

    Serialized as one 'key=value' line per entry. Values may contain '=',
    keys may not.
    """

    entries: typing.Dict[str, str] = attr.ib(factory=dict)

    @classmethod
    def parse(cls, plaintext: str) -> 'Ledger':
        ledger = cls()
        skipped = []
        # Only \n ends a line, values may hold other Unicode line separators.
        for number, line in enumerate(plaintext.split('\n'), start=1):
            line = line.removesuffix('\r')
            if not line.strip():
                continue
            key, separator, value = line.partition('=')
            if not separator or not key:
                skipped.append(number)
                continue
            ledger.entries.pop(key, None)
            ledger.entries[key] = value
        if skipped:
            # Never log the lines themselves, they may contain values.
            log.warning(f"Ignored {len(skipped)} malformed line(s) in the store: "
                        f"{', '.join(map(str, skipped))}")
        log.debug(f"Parsed {len(ledger)} credentials")
        return ledger

    def serialize(self) -> str:
        return ''.join(f"{key}={value}\n" for key, value in self.entries.items())

    def upsert(self, key: str, value: str) -> 'Ledger':
        """Set a credential, moving it to the end of the ledger."""
        validate_key(key)
        validate_value(value)
        self.entries.pop(key, None)
        self.entries[key] = value
        return self

    def merge(self, theirs: 'Ledger', base: typing.Optional['Ledger'] = None) -> 'Ledger':
        """
        Three-way merge another copy of the ledger into this one.

        Each credential takes the side that changed it since the common base;
        when both sides changed it, this side wins.
        """
        base = base if base is not None else Ledger()
        keys = [*theirs.entries, *(k for k in self.entries if k not in theirs.entries)]
        merged: typing.Dict[str, str] = {}
        for key in keys:
            ours_value = self.entries.get(key)
            theirs_value = theirs.entries.get(key)
            base_value = base.entries.get(key)
            if ours_value == base_value:
                value = theirs_value
            elif theirs_value == base_value:
                value = ours_value
            else:
                if ours_value is not None and theirs_value is not None:
                    log.warning(f"Both copies changed {key}, keeping the local value")
                value = ours_value if ours_value is not None else theirs_value
            if value is not None:
                merged[key] = value
        self.entries.clear()
        self.entries.update(merged)
        return self

    def lookup(self, key: str) -> str:
        try:
            return self.entries[key]
        except KeyError:
            raise NotFoundError(key) from None

    def all(self) -> typing.Sequence[Entry]:
        return tuple(self.entries.items())

    def clear(self) -> None:
        self.entries.clear()

    def __iter__(self) -> typing.Iterator[Entry]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    def __repr__(self) -> str:
        return f"<Ledger with {len(self)} credentials>"
