"""Error taxonomy for the graph engine."""

from __future__ import annotations

from typing import Sequence


class NoteGraphError(Exception):
    """Base class for errors raised by the graph engine."""


class ExtractionUnavailable(NoteGraphError):
    """The extraction collaborator could not be reached or its output parsed.

    Raised before any database write, so nothing needs rolling back.
    """


class IntegrityViolation(NoteGraphError):
    """A graph write would have broken a referential invariant.

    Always fatal for the operation: the enclosing transaction is rolled back.
    """


class SweepFailure(NoteGraphError):
    """The consistency sweep failed and was rolled back."""


class NoteNotFound(NoteGraphError):
    def __init__(self, memory_id: int) -> None:
        super().__init__(f"note {memory_id} not found")
        self.memory_id = memory_id


class EntityNotFound(NoteGraphError):
    def __init__(self, entity_id: int) -> None:
        super().__init__(f"entity {entity_id} not found")
        self.entity_id = entity_id


class LibraryNotFound(NoteGraphError):
    def __init__(self, library_id: str) -> None:
        super().__init__(f"library {library_id!r} not found")
        self.library_id = library_id


class ResolutionAmbiguous(UserWarning):
    """A name matched more than one entity; the first stable match was used."""

    def __init__(self, name: str, chosen_id: int, candidate_ids: Sequence[int]) -> None:
        self.name = name
        self.chosen_id = chosen_id
        self.candidate_ids = list(candidate_ids)
        super().__init__(
            f"name {name!r} matches entities {self.candidate_ids}; using {chosen_id}"
        )
