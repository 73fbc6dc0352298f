from typing import Dict

from sentinel.models.position_models import Protocol
from sentinel.protocols.base import ProtocolAdapter
from sentinel.protocols.drift import DriftAdapter
from sentinel.protocols.kamino import KaminoAdapter
from sentinel.protocols.marginfi import MarginfiAdapter


def build_adapters() -> Dict[Protocol, ProtocolAdapter]:
    return {
        Protocol.MARGINFI: MarginfiAdapter(),
        Protocol.KAMINO: KaminoAdapter(),
        Protocol.DRIFT: DriftAdapter(),
    }


def adapter_for_program(adapters: Dict[Protocol, ProtocolAdapter], program_id: str):
    for adapter in adapters.values():
        if adapter.program_id == program_id:
            return adapter
    return None
