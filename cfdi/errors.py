from typing import Any, List, Optional


class CfdiError(Exception):
    """Base error of the fiscal engine. ``kind`` is stable and safe to branch on."""

    kind = "error"
    retriable = False

    def __init__(self, message: str, code: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.detail = detail or message


class ValidationError(CfdiError):
    kind = "validation"

    def __init__(self, messages: List[str], code: Optional[str] = None):
        self.messages = list(messages)
        super().__init__("Datos incompletos para CFDI", code=code, detail="; ".join(self.messages))


class CredentialError(CfdiError):
    kind = "credential"


class SigningError(CfdiError):
    kind = "signing"


class PacRejected(CfdiError):
    kind = "pac_rejected"

    def __init__(self, message: str, code: Optional[str] = None, incidents: Optional[List[dict]] = None,
                 recovered: Any = None):
        super().__init__(message, code=code)
        self.incidents = incidents or []
        # StampResponse of a previous stamp of the same document, when the PAC returns it
        self.recovered = recovered

    @property
    def already_stamped(self) -> bool:
        return self.code == "307"


class PacUnavailable(CfdiError):
    kind = "pac_unavailable"
    retriable = True


class StateConflict(CfdiError):
    kind = "state_conflict"


class PersistenceError(CfdiError):
    kind = "persistence"


class NotFound(CfdiError):
    kind = "not_found"
