"""Custom exceptions for the queueing context."""


class JobNotFoundError(KeyError):
    """
    Raised for status or cancel requests against a job the caller cannot see.

    Unknown jobs and jobs owned by someone else produce the same message so
    that job ids of other users are not disclosed.

    Attributes:
        job_id: The requested job identifier
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.message = f"Job not found or not authorized: {job_id}"
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class InputNotFoundError(KeyError):
    """
    Raised when a text provider has no text for an input reference.

    Attributes:
        input_ref: The missing upload reference
    """

    def __init__(self, input_ref: str):
        self.input_ref = input_ref
        self.message = f"No extracted text for input reference: {input_ref}"
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message
