"""Error taxonomy for the discovery and synthesis pipeline.

Issues come in two flavours: recorded ones (the stage logs them and keeps
going) and fatal ones (the pipeline aborts and reports everything it has
accumulated so far).
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class SourceSite:
    """A location in the scanned source tree."""

    file: str
    line: int = 0

    def __str__(self) -> str:
        return f"{self.file}:{self.line}" if self.line else self.file


class SynthError(Exception):
    """Base class for every error raised by api-test-synth."""

    fatal = True

    def __init__(self, message: str, site: SourceSite | None = None):
        super().__init__(message)
        self.message = message
        self.site = site

    def __str__(self) -> str:
        if self.site is not None:
            return f"{self.site}: {self.message}"
        return self.message


class SourceTreeError(SynthError):
    """The source tree is missing or unreadable."""


class ConfigError(SynthError):
    """The configuration file is unreadable or holds invalid options."""


class ScanCancelled(SynthError):
    """The scan was cancelled between endpoints."""


class DiscoveryError(SynthError):
    """An endpoint's route could not be statically resolved."""

    fatal = False


class SchemaResolutionWarning(SynthError):
    """An annotation, constraint or type reference was not understood."""

    fatal = False


class UnverifiableBoundaryError(SynthError):
    """No boundary value satisfies all of a field's constraints at once."""

    fatal = False


class ConflictError(SynthError):
    """Two source sites declare the same method+path with different metadata."""

    def __init__(self, conflicts: list[tuple[str, SourceSite, SourceSite, str]]):
        self.conflicts = list(conflicts)
        lines = [
            f"{identity} declared at {first} and {second} ({reason})"
            for identity, first, second, reason in self.conflicts
        ]
        super().__init__("conflicting endpoint declarations:\n  " + "\n  ".join(lines))


class UnboundVariableError(SynthError):
    """A test case references a variable nothing before it binds."""

    def __init__(self, references: list[tuple[str, str]]):
        self.references = list(references)
        lines = [f"'{case}' uses {{{{{var}}}}}" for case, var in self.references]
        super().__init__("unbound collection variables:\n  " + "\n  ".join(lines))
