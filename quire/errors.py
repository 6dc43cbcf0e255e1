from __future__ import annotations


class QuireError(Exception):
    pass


class InputError(QuireError, ValueError):
    """Bad arguments; raised before anything is read or written."""


class RuleCompileError(InputError):
    def __init__(self, index: int, pattern: str, reason: object) -> None:
        self.index = index
        self.pattern = pattern
        super().__init__(f"rule {index + 1}: cannot compile {pattern!r}: {reason}")


class FormatError(QuireError):
    """The container, package document or navigation document is unusable."""


class ArchiveError(QuireError, OSError):
    pass
