"""
Business exceptions for the messaging core.

WHAT: Typed failures raised by stores, the negotiation engine and the gateway
WHY: Every failure kind maps to one fixed HTTP status and error code
HOW: Exception classes carrying a human-readable message, a code and details
"""

from typing import Optional, List, Dict, Any


class BusinessException(Exception):
    """Base class for business logic exceptions."""

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class AuthenticationException(BusinessException):
    """Raised when a request or socket carries no valid credential."""

    def __init__(self, message: str = "Token de autenticación requerido"):
        super().__init__(message=message, code="UNAUTHORIZED")


# ========== Authorization ==========

class NotParticipantException(BusinessException):
    """Raised when a user acts on a conversation they do not belong to."""

    def __init__(self, conversation_id: str, user_id: str):
        super().__init__(
            message="No eres participante de esta conversación",
            code="NOT_PARTICIPANT",
            details={"conversation_id": conversation_id, "user_id": user_id}
        )


class NotAuthorException(BusinessException):
    """Raised when someone other than the sender edits or deletes a message."""

    def __init__(self, message_id: str, action: str = "modificar"):
        super().__init__(
            message=f"Solo el autor puede {action} el mensaje",
            code="NOT_AUTHOR",
            details={"message_id": message_id}
        )


class ForbiddenException(BusinessException):
    """Raised when an action is not allowed for this user."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message=message, code="FORBIDDEN", details=details)


# ========== Not found ==========

class NotFoundException(BusinessException):
    """Base class for missing resources."""

    def __init__(self, message: str, code: str = "NOT_FOUND", details: Optional[Any] = None):
        super().__init__(message=message, code=code, details=details)


class ConversationNotFoundException(NotFoundException):
    """Raised when a conversation is not found."""

    def __init__(self, conversation_id: str):
        super().__init__(
            message="Conversación no encontrada",
            code="CONVERSATION_NOT_FOUND",
            details={"conversation_id": conversation_id}
        )


class MessageNotFoundException(NotFoundException):
    """Raised when a message is not found."""

    def __init__(self, message_id: str):
        super().__init__(
            message="Mensaje no encontrado",
            code="MESSAGE_NOT_FOUND",
            details={"message_id": message_id}
        )


class ProposalNotFoundException(NotFoundException):
    """Raised when a message is missing or is not an exchange proposal."""

    def __init__(self, message_id: str):
        super().__init__(
            message="Propuesta no encontrada",
            code="PROPOSAL_NOT_FOUND",
            details={"message_id": message_id}
        )


class PublicationNotFoundException(NotFoundException):
    """Raised when a referenced publication does not exist."""

    def __init__(self, publication_id: str):
        super().__init__(
            message="Publicación no encontrada",
            code="PUBLICATION_NOT_FOUND",
            details={"publication_id": publication_id}
        )


# ========== Validation ==========

class InvalidParticipantException(BusinessException):
    """Raised when the other participant is the requester or does not exist."""

    def __init__(self, message: str, participant_id: str):
        super().__init__(
            message=message,
            code="INVALID_PARTICIPANT",
            details={"participant_id": participant_id}
        )


class InvalidContentException(BusinessException):
    """Raised when a payload does not match its declared message type."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(
            message=message,
            code="INVALID_CONTENT",
            details={"field_errors": field_errors} if field_errors else None
        )


class WrongTypeException(BusinessException):
    """Raised when an operation does not apply to the message type."""

    def __init__(self, message_id: str, message_type: str):
        super().__init__(
            message="Solo se pueden editar mensajes de texto",
            code="WRONG_TYPE",
            details={"message_id": message_id, "type": message_type}
        )


class EditWindowExpiredException(BusinessException):
    """Raised when a message is older than the edit window."""

    def __init__(self, message_id: str, window_minutes: int):
        super().__init__(
            message=f"Solo puedes editar mensajes de los últimos {window_minutes} minutos",
            code="EDIT_WINDOW_EXPIRED",
            details={"message_id": message_id, "window_minutes": window_minutes}
        )


# ========== Negotiation ==========

class ProposalExpiredException(BusinessException):
    """Raised when responding to a proposal past its expiration date."""

    def __init__(self, message_id: str, expiration_date: str):
        super().__init__(
            message="Esta propuesta ha expirado",
            code="PROPOSAL_EXPIRED",
            details={"message_id": message_id, "expiration_date": expiration_date}
        )


class AlreadyResolvedException(BusinessException):
    """Raised when a proposal already left the pending state."""

    def __init__(self, message_id: str, current_status: str):
        super().__init__(
            message="Esta propuesta ya ha sido respondida",
            code="ALREADY_RESOLVED",
            details={"message_id": message_id, "current_status": current_status}
        )


# ========== Throttling / transport ==========

class RateLimitedException(BusinessException):
    """Raised when a user exceeds the request budget."""

    def __init__(self, user_id: str, retry_after: int):
        super().__init__(
            message="Demasiadas solicitudes. Intenta de nuevo más tarde.",
            code="RATE_LIMITED",
            details={"user_id": user_id, "retry_after": retry_after}
        )
        self.retry_after = retry_after


class TransportException(BusinessException):
    """Raised client-side when the gateway connection cannot be (re)established."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(
            message=message,
            code="TRANSPORT_ERROR",
            details={"attempts": attempts}
        )
