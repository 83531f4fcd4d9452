from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .models import ParticipantStatus
from .provider import ProviderParticipant
from .remote import REMOTE_ERRORS, ProviderError, ResilientRemoteClient, error_code_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParticipantResult:
    status: ParticipantStatus
    participant: ProviderParticipant | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


async def add_participant(
    remote: ResilientRemoteClient,
    conversation_sid: str,
    *,
    identity: str | None = None,
    address: str | None = None,
    proxy_address: str | None = None,
    attributes: Mapping[str, Any] | None = None,
) -> ParticipantResult:
    try:
        participant = await remote.call(
            lambda provider: provider.create_participant(
                conversation_sid,
                identity=identity,
                address=address,
                proxy_address=proxy_address,
                attributes=attributes,
            ),
            description=f"add participant to {conversation_sid}",
        )
    except ProviderError as exc:
        if exc.is_participant_conflict:
            logger.debug("participant %s already in %s", identity or address, conversation_sid)
            return ParticipantResult(status="already_present")
        logger.warning("could not add participant %s to %s: %s", identity or address, conversation_sid, exc)
        return ParticipantResult(status="failed", error_code=error_code_for(exc), error_message=exc.message)
    except REMOTE_ERRORS as exc:
        logger.warning("could not add participant %s to %s: %s", identity or address, conversation_sid, exc)
        return ParticipantResult(status="failed", error_code=error_code_for(exc), error_message=str(exc))
    return ParticipantResult(status="added", participant=participant)


async def ensure_identity_participant(
    remote: ResilientRemoteClient,
    conversation_sid: str,
    identity: str,
    *,
    participants: tuple[ProviderParticipant, ...] | None = None,
) -> ParticipantResult:
    if participants is not None:
        for participant in participants:
            if participant.identity == identity:
                return ParticipantResult(status="already_present", participant=participant)
    return await add_participant(remote, conversation_sid, identity=identity, attributes={"role": "agent"})
