from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Sequence

from .config import DEFAULT_AGENT_PREFIXES
from .provider import ProviderParticipant
from .store import ContactDirectory

logger = logging.getLogger(__name__)

UNKNOWN_CUSTOMER = "Unknown Customer"

_PHONE_IDENTITY = re.compile(r"^\+?[1-9]\d{1,14}$")
_EMAIL_IDENTITY = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ParticipantRole(str, Enum):
    AGENT = "agent"
    CUSTOMER = "customer"
    SYSTEM = "system"


def classify_identity(identity: str | None, *, agent_prefixes: Sequence[str] = DEFAULT_AGENT_PREFIXES) -> ParticipantRole:
    if not identity:
        return ParticipantRole.SYSTEM
    if any(identity.startswith(prefix) for prefix in agent_prefixes):
        return ParticipantRole.AGENT
    return ParticipantRole.CUSTOMER


def classify_participant(
    participant: ProviderParticipant,
    *,
    agent_prefixes: Sequence[str] = DEFAULT_AGENT_PREFIXES,
) -> ParticipantRole:
    """Decide whether a provider participant is an agent, the customer or neither.

    An explicit ``role`` attribute written by the dashboard wins. Otherwise the
    identity prefix convention marks agents, a messaging binding or any other
    identity marks the customer, and a participant with neither is a system
    participant.
    """
    explicit = (participant.attributes.role or "").lower()
    if explicit in {role.value for role in ParticipantRole}:
        return ParticipantRole(explicit)
    if participant.identity and any(participant.identity.startswith(prefix) for prefix in agent_prefixes):
        return ParticipantRole.AGENT
    if participant.binding is not None and participant.binding.address:
        return ParticipantRole.CUSTOMER
    return classify_identity(participant.identity, agent_prefixes=agent_prefixes)


def find_customer_participant(
    participants: Iterable[ProviderParticipant],
    *,
    agent_prefixes: Sequence[str] = DEFAULT_AGENT_PREFIXES,
) -> ProviderParticipant | None:
    for participant in participants:
        if classify_participant(participant, agent_prefixes=agent_prefixes) is ParticipantRole.CUSTOMER:
            return participant
    return None


def strip_channel(address: str) -> str:
    _, sep, rest = address.partition(":")
    return rest.strip() if sep else address.strip()


def normalize_phone_number(value: str | None) -> str | None:
    if not value:
        return None
    digits = "".join(ch for ch in strip_channel(value) if ch.isdigit())
    if not digits or digits[0] == "0" or len(digits) > 15:
        return None
    return f"+{digits}"


def format_phone_number(value: str) -> str:
    normalized = normalize_phone_number(value)
    if normalized is None:
        return value
    digits = normalized[1:]
    if len(digits) == 12:
        return f"+{digits[:2]} {digits[2:4]} {digits[4:8]} {digits[8:]}"
    if len(digits) == 11:
        return f"+{digits[:1]} {digits[1:4]} {digits[4:7]} {digits[7:]}"
    if len(digits) == 10:
        return f"+{digits[:3]} {digits[3:6]} {digits[6:]}"
    return normalized


@dataclass(frozen=True)
class Customer:
    customer_id: str
    name: str
    phone: str | None = None
    email: str | None = None
    avatar: str | None = None
    last_seen: datetime | None = None
    source: str = "fallback"


@dataclass(frozen=True)
class Agent:
    agent_id: str
    name: str
    email: str
    department: str
    skills: tuple[str, ...]
    max_concurrent_chats: int


class IdentityResolver:
    def __init__(
        self,
        *,
        contacts: ContactDirectory,
        agent_prefixes: Sequence[str] = DEFAULT_AGENT_PREFIXES,
        agent_email_domain: str = "company.com",
    ) -> None:
        self._contacts = contacts
        self._agent_prefixes = tuple(agent_prefixes)
        self._agent_email_domain = agent_email_domain
        self._agents: dict[str, Agent] = {}

    @property
    def agent_prefixes(self) -> tuple[str, ...]:
        return self._agent_prefixes

    def classify(self, participant: ProviderParticipant) -> ParticipantRole:
        return classify_participant(participant, agent_prefixes=self._agent_prefixes)

    def find_customer(self, participants: Iterable[ProviderParticipant]) -> ProviderParticipant | None:
        return find_customer_participant(participants, agent_prefixes=self._agent_prefixes)

    def resolve_customer(self, participant: ProviderParticipant | None) -> Customer:
        # Never memoized: names change between polls.
        if participant is None:
            return Customer(customer_id="unknown", name=UNKNOWN_CUSTOMER)

        attributes = participant.attributes
        binding = participant.binding
        identity = participant.identity
        binding_phone = normalize_phone_number(binding.address) if binding and binding.address else None
        identity_phone = identity if identity and _PHONE_IDENTITY.match(identity) else None
        identity_email = identity if identity and _EMAIL_IDENTITY.match(identity) else None
        phone = binding_phone or normalize_phone_number(identity_phone) or normalize_phone_number(attributes.phone)
        email = attributes.email or identity_email
        customer_id = identity or (binding.address if binding and binding.address else participant.sid)

        if attributes.display_name:
            return Customer(customer_id=customer_id, name=attributes.display_name, phone=phone, email=email, source="attributes")

        if binding_phone:
            contact = self._contacts.find_contact_by_phone(binding_phone)
            if contact is not None and contact.name.strip():
                return Customer(
                    customer_id=customer_id,
                    name=contact.name,
                    phone=phone,
                    email=contact.email or email,
                    avatar=contact.avatar,
                    last_seen=contact.last_seen,
                    source="contact",
                )

        if binding is not None and binding.name:
            return Customer(customer_id=customer_id, name=binding.name, phone=phone, email=email, source="binding")

        if binding_phone:
            return Customer(customer_id=customer_id, name=format_phone_number(binding_phone), phone=phone, email=email, source="phone")

        if identity_phone:
            return Customer(customer_id=customer_id, name=format_phone_number(identity_phone), phone=phone, email=email, source="phone")

        if identity_email:
            return Customer(customer_id=customer_id, name=identity_email.split("@", 1)[0], phone=phone, email=email, source="email")

        logger.debug("participant %s has no usable identity data", participant.sid)
        return Customer(customer_id=customer_id, name=UNKNOWN_CUSTOMER, phone=phone, email=email)

    def resolve_agent(self, identity: str) -> Agent:
        cached = self._agents.get(identity)
        if cached is not None:
            return cached
        local_part = identity
        for prefix in self._agent_prefixes:
            if identity.startswith(prefix):
                local_part = identity[len(prefix) :]
                break
        agent = Agent(
            agent_id=identity,
            name=identity,
            email=f"{local_part}@{self._agent_email_domain}",
            department="Customer Success",
            skills=("customer-support",),
            max_concurrent_chats=5,
        )
        self._agents[identity] = agent
        return agent

    def clear_agent_cache(self) -> None:
        self._agents.clear()
