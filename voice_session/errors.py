"""
Voice session error taxonomy.

Every failure carries a stable category string (for events and logs) and maps
to a short French message for the user-facing surface.
"""
from typing import Optional


class VoiceSessionError(Exception):
    """Base class for all voice session failures."""

    category = "session.unknown_error"

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message or self.category)
        self.detail = detail


class AuthFailure(VoiceSessionError):
    """Credential unavailable or rejected. Fatal to session start, not retried."""

    category = "credential.auth_failed"


class ConfigurationFailure(VoiceSessionError):
    """The credential authority has no issuing key configured."""

    category = "credential.misconfigured"


class MediaAccessDenied(VoiceSessionError):
    """No microphone stream is available."""

    category = "media.access_denied"


class NegotiationFailure(VoiceSessionError):
    """The peer connection could not be established."""

    category = "transport.negotiation_failed"


class SignalingFailure(NegotiationFailure):
    """The offer/answer exchange did not complete with a success status."""

    category = "transport.signaling_failed"


class NegotiationTimeout(NegotiationFailure):
    """No connected/failed state was reached within the connect bound."""

    category = "transport.negotiation_timeout"


class TransportLost(VoiceSessionError):
    """The transport failed after it had connected. No automatic reconnect."""

    category = "transport.lost"


class MalformedEvent(VoiceSessionError):
    """An unparseable control channel frame. Always non-fatal."""

    category = "protocol.malformed_event"


class RemoteReportedError(VoiceSessionError):
    """An `error` event sent by the remote endpoint."""

    category = "remote.error"

    def __init__(self, message: str = "", *, code: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail=detail)
        self.code = code


class SessionAlreadyActive(VoiceSessionError):
    """start() was called while the session is not idle."""

    category = "session.already_active"


class TextChatFailure(VoiceSessionError):
    """The out-of-band text chat call failed."""

    category = "text_chat.failed"


_USER_MESSAGES = {
    AuthFailure: "Impossible d'obtenir l'autorisation pour la session vocale.",
    ConfigurationFailure: "Le service vocal n'est pas configuré. Contactez l'administrateur.",
    MediaAccessDenied: "Accès au microphone refusé ou indisponible.",
    SignalingFailure: "La connexion au service vocal a échoué. Veuillez réessayer.",
    NegotiationTimeout: "La connexion au service vocal a expiré. Veuillez réessayer.",
    NegotiationFailure: "La connexion au service vocal a échoué. Veuillez réessayer.",
    TransportLost: "Connexion perdue.",
    SessionAlreadyActive: "Une session vocale est déjà en cours.",
    TextChatFailure: "Désolé, une erreur est survenue lors de l'envoi de votre message. Veuillez réessayer.",
}


def user_message(error: BaseException) -> str:
    """
    User-facing message for an error.

    Remote-reported errors surface the remote message as-is.
    """
    if isinstance(error, RemoteReportedError):
        return str(error) or "Erreur inconnue"
    for cls in type(error).__mro__:
        if cls in _USER_MESSAGES:
            return _USER_MESSAGES[cls]
    return "Désolé, une erreur inattendue est survenue."
