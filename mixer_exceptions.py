"""Exception types for G-code mixing.

Every exception carries a technical message for logs and a shorter
user-facing message that a front end can show as-is.
"""

from typing import Optional


class GCodeMixerException(Exception):
    """Root of every error raised while parsing, editing or merging."""

    def __init__(self, message: str, user_message: Optional[str] = None,
                 details: Optional[str] = None):
        """
        Args:
            message: What went wrong, as written to the log
            user_message: Text shown to the person running the mix; defaults to ``message``
            details: Extra context appended by :meth:`get_full_message`
        """
        super().__init__(message)
        self.user_message = user_message or message
        self.details = details

    def get_ui_message(self) -> str:
        """Return the text meant for the person running the mix."""
        return self.user_message

    def get_full_message(self) -> str:
        """Return the user text followed by any details."""
        if self.details:
            return f"{self.user_message}\n\nDetails: {self.details}"
        return self.user_message


class InputError(GCodeMixerException):
    """Raised when a source file cannot be read or decoded."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        user_msg = "Could not read G-code file"
        if file_path:
            user_msg += f": {file_path}"
        super().__init__(message, user_msg, message)
        self.file_path = file_path


class InvariantViolation(GCodeMixerException):
    """Raised when a timeline would end up overlapping or inconsistent.

    The operation that detects it leaves the previous timeline untouched.
    """

    def __init__(self, message: str):
        user_msg = "The timeline change was rejected because it would leave it in an invalid state"
        super().__init__(message, user_msg, message)


class ValidationError(GCodeMixerException):
    """Raised when an operation receives arguments it cannot act on."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        user_msg = "Input validation failed"
        if field_name:
            user_msg += f" for {field_name}"
        user_msg += f"\n\n{message}"
        super().__init__(message, user_msg, message)
        self.field_name = field_name


class ProgramInUseError(GCodeMixerException):
    """Raised when removing a program that timeline segments still reference."""

    def __init__(self, program_id: str, name: Optional[str] = None):
        message = f"Program {program_id} is still referenced by the timeline"
        user_msg = (f"Cannot remove {name or 'this G-code'} while it is still in use in the timeline.\n"
                    "Remove all of its segments from the timeline first.")
        super().__init__(message, user_msg)
        self.program_id = program_id
