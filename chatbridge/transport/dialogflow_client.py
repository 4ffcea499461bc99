# chatbridge/transport/dialogflow_client.py
"""
Dialogflow CX relay client.

Submits one visitor utterance to the conversational agent and flattens
the agent's reply into plain text.

Session identity:
    projects/{project}/locations/{location}/agents/{agent}/sessions/{session_id}
The same session id is reused for every turn of a visitor so the agent
keeps its dialogue state between messages.

Error handling:
    ``detect_intent`` never raises.  Missing credentials short-circuit with a
    configuration error before any network call; API, auth and transport
    failures are converted into ``NluResult(success=False)``.
"""
from __future__ import annotations

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import dialogflowcx_v3
from google.oauth2 import service_account

from chatbridge.config import settings
from chatbridge.core.domain import NluResult
from chatbridge.infra.logging_config import get_logger
from chatbridge.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)

FALLBACK_REPLY = "I didn't understand that. Can you please rephrase?"
CONFIG_ERROR = "config_error: missing Dialogflow CX credentials"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def api_endpoint_for(location: str) -> str:
    """Regional API host for a Dialogflow CX location."""
    if location == "global":
        return "dialogflow.googleapis.com"
    return f"{location}-dialogflow.googleapis.com"


def normalize_private_key(private_key: str) -> str:
    """Env vars usually carry the PEM with literal ``\\n`` sequences."""
    return private_key.replace("\\n", "\n")


def extract_reply_text(query_result) -> str | None:
    """Join the first text of every text response message, or None if there is none."""
    parts: list[str] = []
    for message in getattr(query_result, "response_messages", None) or []:
        text = getattr(message, "text", None)
        segments = getattr(text, "text", None) if text is not None else None
        if segments and segments[0]:
            parts.append(segments[0])
    return " ".join(parts) if parts else None


class DialogflowCXClient:
    """Detect-intent client bound to one Dialogflow CX agent."""

    def __init__(
        self,
        project_id: str | None = None,
        location: str | None = None,
        agent_id: str | None = None,
        client_email: str | None = None,
        private_key: str | None = None,
        language_code: str | None = None,
        timeout: float | None = None,
    ):
        self.project_id = project_id if project_id is not None else settings.dialogflow_project_id
        self.location = location or settings.dialogflow_location
        self.agent_id = agent_id if agent_id is not None else settings.dialogflow_agent_id
        self._client_email = client_email if client_email is not None else settings.dialogflow_client_email
        self._private_key = private_key if private_key is not None else settings.dialogflow_private_key
        self.language_code = language_code or settings.dialogflow_language_code
        self.timeout = timeout if timeout is not None else settings.dialogflow_timeout_seconds
        self._client: dialogflowcx_v3.SessionsAsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self.project_id and self.agent_id and self._client_email and self._private_key)

    @property
    def api_endpoint(self) -> str:
        return api_endpoint_for(self.location)

    def session_path(self, session_id: str) -> str:
        return dialogflowcx_v3.SessionsAsyncClient.session_path(
            self.project_id, self.location, self.agent_id, session_id,
        )

    def _build_client(self) -> dialogflowcx_v3.SessionsAsyncClient:
        credentials = service_account.Credentials.from_service_account_info(
            {
                "type": "service_account",
                "project_id": self.project_id,
                "client_email": self._client_email,
                "private_key": normalize_private_key(self._private_key or ""),
                "token_uri": TOKEN_URI,
            }
        )
        return dialogflowcx_v3.SessionsAsyncClient(
            credentials=credentials,
            client_options={"api_endpoint": self.api_endpoint},
        )

    def _get_client(self) -> dialogflowcx_v3.SessionsAsyncClient:
        if self._client is None:
            self._client = self._build_client()
            logger.info(
                f"Dialogflow CX client created: project={self.project_id}, "
                f"location={self.location}, endpoint={self.api_endpoint}"
            )
        return self._client

    def build_request(
        self,
        text: str,
        session_id: str,
        user_email: str | None = None,
        user_name: str | None = None,
    ) -> dialogflowcx_v3.DetectIntentRequest:
        request = dialogflowcx_v3.DetectIntentRequest(
            session=self.session_path(session_id),
            query_input=dialogflowcx_v3.QueryInput(
                text=dialogflowcx_v3.TextInput(text=text),
                language_code=self.language_code,
            ),
        )
        # Visitor context for personalised replies
        if user_email or user_name:
            request.query_params = dialogflowcx_v3.QueryParameters(
                parameters={
                    "userEmail": user_email or "",
                    "userName": user_name or "",
                }
            )
        return request

    async def detect_intent(
        self,
        text: str,
        session_id: str,
        user_email: str | None = None,
        user_name: str | None = None,
    ) -> NluResult:
        """Send one text turn to the agent under ``session_id``."""
        if not self.configured:
            logger.error("Dialogflow CX request skipped: credentials not configured")
            inc_counter("nlu_config_error")
            return NluResult(success=False, error=CONFIG_ERROR)

        try:
            request = self.build_request(text, session_id, user_email, user_name)
            client = self._get_client()
            with AppMetrics.track_nlu_latency():
                response = await client.detect_intent(request=request, timeout=self.timeout)
        except (
            google_exceptions.GoogleAPIError,
            auth_exceptions.GoogleAuthError,
            ValueError,
            TimeoutError,
        ) as exc:
            logger.error(f"Dialogflow CX communication error: {exc.__class__.__name__}: {exc}")
            inc_counter("nlu_errors", error_type=exc.__class__.__name__)
            return NluResult(success=False, error="Failed to communicate with Dialogflow CX")
        except Exception as exc:
            logger.error(f"Dialogflow CX unexpected error: {exc}", exc_info=True)
            inc_counter("nlu_errors", error_type="unexpected")
            return NluResult(success=False, error="Failed to communicate with Dialogflow CX")

        query_result = response.query_result
        reply = extract_reply_text(query_result) or FALLBACK_REPLY
        intent = getattr(getattr(query_result, "intent", None), "display_name", None) or None
        confidence = getattr(query_result, "intent_detection_confidence", None)

        logger.info(
            f"Dialogflow CX response: intent={intent}, confidence={confidence}, "
            f"length={len(reply)}"
        )
        inc_counter("nlu_requests_total", status="success")
        return NluResult(success=True, response=reply, intent=intent, confidence=confidence)
