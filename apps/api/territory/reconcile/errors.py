from __future__ import annotations


class ImportPipelineError(Exception):
    """Base error for workbook reconciliation failures."""

    def __init__(self, message: str, *, entity_type: str | None = None) -> None:
        self.entity_type = entity_type
        self.message = message
        super().__init__(message)


class ParseError(ImportPipelineError):
    """Raised when the uploaded file cannot be read as a workbook. Aborts the whole run."""


class SchemaError(ImportPipelineError):
    """Raised when a sheet is missing required columns or data rows. Skips that sheet's phase."""

    def __init__(self, entity_type: str, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems), entity_type=entity_type)


class NameResolutionError(ImportPipelineError):
    """A row references an account, seller, manager or profile that cannot be matched."""

    def __init__(self, entity_type: str, row_number: int, kind: str, name: str, *, ambiguous: bool = False) -> None:
        self.row_number = row_number
        self.kind = kind
        self.name = name
        self.ambiguous = ambiguous
        reason = "is ambiguous" if ambiguous else "not found"
        super().__init__(f"Row {row_number}: {kind} '{name}' {reason}", entity_type=entity_type)


class RowValidationError(ImportPipelineError):
    """A row carries a value outside its column's allowed set."""

    def __init__(self, entity_type: str, row_number: int, reason: str) -> None:
        self.row_number = row_number
        super().__init__(f"Row {row_number}: {reason}", entity_type=entity_type)


class WriteError(ImportPipelineError):
    """A chunk write was rejected by the store; its rows were not persisted."""

    def __init__(self, entity_type: str, chunk: int, cause: str) -> None:
        self.chunk = chunk
        self.cause = cause
        super().__init__(f"Batch {chunk + 1} failed: {cause}", entity_type=entity_type)


class ReferenceDataWarning(UserWarning):
    def __init__(self, sheet: str, row_number: int, field: str, value: str) -> None:
        self.sheet = sheet
        self.row_number = row_number
        self.field = field
        self.value = value
        super().__init__(f"{sheet} Row {row_number}: {field} '{value}' not found in mapping")


class LockContentionWarning(UserWarning):
    def __init__(self, holder: str) -> None:
        self.holder = holder
        super().__init__(f"Import lock is held by another run; continuing without it (requested by {holder})")
