class IceFlowException(Exception):
    message: str

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class SchemaConflictException(IceFlowException):
    column: str
    foundTypes: list[str]

    def __init__(self, column: str, foundTypes: list[str]):
        self.column = column
        self.foundTypes = foundTypes
        super().__init__(f"tried to convert schema to JSON with column '{self.column}' conflicting types: "
                         f"{', '.join(foundTypes)}")


class NoLogFilesException(IceFlowException):
    def __init__(self):
        super().__init__("no log files found")


class TransientIOError(IceFlowException):
    """
    Storage or network failure that survived every retry.
    """
    operation: str
    attempts: int

    def __init__(self, operation: str, attempts: int, cause: Exception):
        self.operation = operation
        self.attempts = attempts
        self.__cause__ = cause
        super().__init__(f"{operation} failed after {attempts} attempts: {cause}")


class ParseError(IceFlowException):
    """
    A single malformed source record. Always skipped and counted, never fatal to a job.
    """
    source: str
    offset: int

    def __init__(self, source: str, offset: int, reason: str):
        self.source = source
        self.offset = offset
        super().__init__(f"malformed record at {source}#{offset}: {reason}")


class SchemaMismatchException(IceFlowException):
    table: str
    columns: list[str]

    def __init__(self, table: str, columns: list[str]):
        self.table = table
        self.columns = columns
        super().__init__(f"table '{table}' does not accept missing columns, got unknown columns: "
                         f"{', '.join(columns)}")


class MergeConflictException(IceFlowException):
    """
    Raised when a second writer tries to run a job that already has a run in flight.
    """
    job: str

    def __init__(self, job: str):
        self.job = job
        super().__init__(f"job '{job}' is already running")
