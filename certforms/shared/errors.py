from __future__ import annotations


class IssuanceError(RuntimeError):
    """Base for failures that abort a certificate issuance."""

    status_code = 500
    public_message = "Certificate could not be issued."

    def user_message(self) -> str:
        return self.public_message


class IssueValidationError(IssuanceError, ValueError):
    status_code = 400

    def user_message(self) -> str:
        return str(self) or "Invalid request."


class TemplateNotFoundError(IssuanceError, LookupError):
    status_code = 404
    public_message = "Certificate template not found or inactive."


class StorageError(IssuanceError):
    public_message = "Certificate could not be stored."


class PersistenceError(IssuanceError):
    public_message = "Certificate record could not be saved."
