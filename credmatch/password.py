import logging

import attr

log = logging.getLogger(__name__)


@attr.s(repr=False, eq=False)
class MasterPassword:
    """
    A master password held in a mutable buffer.

    Use it as a context manager: the buffer is overwritten with zeros when the
    block exits, including when it exits because of an exception or an
    interrupt. Python may still hold other copies of the original string, so
    this narrows the window of exposure rather than closing it.
    """

    buffer: bytearray = attr.ib()

    @classmethod
    def from_text(cls, text: str) -> 'MasterPassword':
        return cls(bytearray(text.encode('utf-8')))

    def __enter__(self) -> 'MasterPassword':
        return self

    def __exit__(self, *exc_info) -> None:
        self.clear()

    def __len__(self) -> int:
        return len(self.buffer.decode('utf-8'))

    def __repr__(self) -> str:
        return '<MasterPassword ********>'

    def __bool__(self) -> bool:
        return bool(self.buffer)

    def clear(self) -> None:
        log.debug("Scrubbing master password from memory")
        for index in range(len(self.buffer)):
            self.buffer[index] = 0
        self.buffer.clear()
