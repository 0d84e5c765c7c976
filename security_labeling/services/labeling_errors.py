from __future__ import annotations


class LabelingError(Exception):
    """Base class for every failure the labeling core reports to callers."""


class SourceValidationError(LabelingError, ValueError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class ExpansionError(LabelingError):
    """The terminology server could not expand a ValueSet."""


class TaggingRequestError(LabelingError, ValueError):
    pass


class BatchStructureError(TaggingRequestError):
    pass


class RulesNotLoadedError(TaggingRequestError):
    def __init__(self) -> None:
        super().__init__("No sensitive topic rules loaded. Please process ValueSets first (API 1).")


class RecordTooDeepError(BatchStructureError):
    def __init__(self, max_depth: int) -> None:
        super().__init__(f"Record nesting exceeds maximum depth of {max_depth}")
        self.max_depth = max_depth
