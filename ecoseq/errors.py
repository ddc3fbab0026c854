"""Exception types raised by ecoseq operations.

Every error is local to the call that raised it: datasets are immutable,
so a failed transform leaves its input untouched.
"""

from __future__ import annotations


class EcoseqError(ValueError):
    """Base class for all ecoseq errors."""


class MalformedDatasetError(EcoseqError):
    """A dataset (or one of its tables) violates a construction invariant.

    Attributes:
        rule: Short name of the violated rule, e.g. ``"duplicate_id"``.
    """

    def __init__(self, rule: str, message: str):
        super().__init__(f"[{rule}] {message}")
        self.rule = rule


class EmptySelectionError(EcoseqError):
    """A prune/subset/filter left no samples or no taxa."""


class UnknownVariableError(EcoseqError, KeyError):
    """A sample metadata variable was requested that does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UnknownRankError(EcoseqError, KeyError):
    """A taxonomic rank was requested that the taxonomy table lacks."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class UnknownMeasureError(EcoseqError, KeyError):
    """An unrecognised diversity measure, distance metric or method name."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class MissingTreeError(EcoseqError):
    """The operation needs a phylogenetic tree and the dataset has none."""


class ZeroSumSampleError(EcoseqError, ZeroDivisionError):
    """A per-sample transform tried to normalise a sample whose counts sum to 0.

    Attributes:
        sample_ids: The offending samples.
    """

    def __init__(self, sample_ids: list[str], message: str | None = None):
        if message is None:
            message = (
                f"{len(sample_ids)} sample(s) sum to zero: "
                + ", ".join(sample_ids[:10])
                + (" ..." if len(sample_ids) > 10 else "")
            )
        super().__init__(message)
        self.sample_ids = list(sample_ids)


class InvalidArchetypeError(EcoseqError):
    """The archetype given to merge_taxa does not name a member of the group."""
