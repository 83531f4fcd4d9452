from __future__ import annotations

import logging
from typing import Iterable, Sequence

from .config import ConfiguredNumber, Settings
from .provider import ProviderParticipant

logger = logging.getLogger(__name__)


def _proxy_address(participant: ProviderParticipant | None) -> str | None:
    if participant is None or participant.binding is None:
        return None
    return participant.binding.proxy_address


def routing_address_for(
    participants: Sequence[ProviderParticipant],
    customer: ProviderParticipant | None,
) -> str | None:
    address = _proxy_address(customer)
    if address:
        return address
    for participant in participants:
        address = _proxy_address(participant)
        if address:
            return address
    return None


class NumberRoutingResolver:
    def __init__(self, numbers: Iterable[ConfiguredNumber]) -> None:
        self._numbers = tuple(numbers)
        self._by_address = {number.routing_address: number for number in reversed(self._numbers)}
        self._by_id = {number.number_id: number for number in self._numbers}

    @classmethod
    def from_settings(cls, settings: Settings) -> NumberRoutingResolver:
        return cls(settings.numbers)

    @property
    def numbers(self) -> tuple[ConfiguredNumber, ...]:
        return self._numbers

    def get(self, number_id: str) -> ConfiguredNumber | None:
        return self._by_id.get(number_id)

    def default(self) -> ConfiguredNumber | None:
        return self._numbers[0] if self._numbers else None

    def resolve_number(self, routing_address: str | None) -> ConfiguredNumber | None:
        if not routing_address:
            return None
        return self._by_address.get(routing_address)

    def resolve_for_participants(
        self,
        participants: Sequence[ProviderParticipant],
        customer: ProviderParticipant | None,
    ) -> tuple[str | None, ConfiguredNumber | None]:
        address = routing_address_for(participants, customer)
        number = self.resolve_number(address)
        if address and number is None:
            logger.warning("routing address %s does not match any configured number", address)
        return address, number
