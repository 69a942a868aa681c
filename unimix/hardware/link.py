"""
MODULE: HARDWARE_ABSTRACTION_LAYER (HAL)
DEVICE: UNIMIX PIGGYBACK / ELM327 BRIDGE
STATUS: SIMULATED + PHYSICAL (ISO 15765-4 CAN)

DESCRIPTION:
    The transport between the tuning core and the car.

    The core never talks to a port directly. It produces textual command
    intents (torque cut, ignition retard, RAM write) and a HardwareLink
    handle, injected by whoever owns the session, carries them out.

    Two implementations:
    - SimulatedLink: always available. Records TX traffic for the live
      terminal and serves demo fault codes.
    - ObdLink: python-OBD over an ELM327/STN adapter.

    connect_link() prefers the physical adapter when asked to, and falls back
    to the simulated link whenever the adapter is missing or refuses to talk.
"""

import logging
import time
from collections import deque
from typing import Any, Dict, List, Optional, Tuple

import obd
from obd.decoders import raw_string
from obd.protocols import ECU

logger = logging.getLogger("UNIMIX.HAL")

LINK_SIMULATED = "simulated"
LINK_PHYSICAL = "physical"

STATUS_OK = "OK"
STATUS_DISCONNECTED = "BUSY/DISCONNECTED"
STATUS_WRITE_ERROR = "WRITE_ERROR"

FaultCode = Tuple[str, str]


class HardwareLink:
    """
    Contract every transport honours. Methods never raise for link
    problems; they report them through status strings / empty results.
    """

    def send_command(self, text: str) -> str:
        raise NotImplementedError

    def get_link_status(self) -> str:
        raise NotImplementedError

    def read_fault_codes(self) -> List[FaultCode]:
        raise NotImplementedError

    def clear_fault_codes(self) -> bool:
        raise NotImplementedError

    def close(self):
        pass


class SimulatedLink(HardwareLink):
    DEMO_FAULTS: List[FaultCode] = [
        ("P0171", "System Too Lean (Bank 1)"),
        ("P0300", "Random/Multiple Cylinder Misfire Detected"),
    ]

    def __init__(self, history_size: int = 100):
        self.tx_history: deque = deque(maxlen=history_size)
        self._faults: List[FaultCode] = list(self.DEMO_FAULTS)

    def send_command(self, text: str) -> str:
        self.tx_history.append((time.time(), text))
        return STATUS_OK

    def get_link_status(self) -> str:
        return LINK_SIMULATED

    def read_fault_codes(self) -> List[FaultCode]:
        self.send_command("03")
        return list(self._faults)

    def clear_fault_codes(self) -> bool:
        self.send_command("04")
        self._faults = []
        return True


class ObdLink(HardwareLink):
    """
    python-OBD backed transport. Free-form intents are wrapped into raw
    OBDCommands and forced onto the bus.
    """

    def __init__(self, connection: "obd.OBD"):
        self.connection = connection
        self._command_cache: Dict[str, obd.OBDCommand] = {}

    @classmethod
    def open(cls, port: Optional[str] = None, protocol: Optional[str] = "6") -> "ObdLink":
        # Forcing the protocol skips the slow auto-search
        connection = obd.OBD(portstr=port, protocol=protocol, fast=False)
        if not connection.is_connected():
            connection.close()
            raise ConnectionError("No OBD adapter answered")
        logger.info(f"[HAL] LINK ESTABLISHED. PROTOCOL: {connection.protocol_name()}")
        return cls(connection)

    def _command_for(self, text: str) -> "obd.OBDCommand":
        cmd = self._command_cache.get(text)
        if cmd is None:
            cmd = obd.OBDCommand(
                "UNIMIX_TX",
                f"Piggyback intent {text}",
                text.encode("ascii", errors="replace"),
                0,
                raw_string,
                ECU.ALL,
                False,
            )
            self._command_cache[text] = cmd
        return cmd

    def send_command(self, text: str) -> str:
        if not self.connection.is_connected():
            return STATUS_DISCONNECTED
        try:
            self.connection.query(self._command_for(text), force=True)
            return STATUS_OK
        except Exception as e:
            logger.error(f"[HAL] TX failed for '{text}': {e}")
            return STATUS_WRITE_ERROR

    def get_link_status(self) -> str:
        return LINK_PHYSICAL if self.connection.is_connected() else LINK_SIMULATED

    def read_fault_codes(self) -> List[FaultCode]:
        response = self.connection.query(obd.commands.GET_DTC)
        if response.is_null():
            return []
        return [(code, desc) for code, desc in response.value]

    def clear_fault_codes(self) -> bool:
        # Mode 04 has no payload, a reply at all means the ECU accepted it
        response = self.connection.query(obd.commands.CLEAR_DTC)
        return bool(response.messages)

    def close(self):
        self.connection.close()


def connect_link(config: Dict[str, Any]) -> HardwareLink:
    """Physical link if configured and reachable, simulated otherwise."""
    if config.get('simulation_mode', True):
        logger.info("[HAL] Config forces SIMULATION_MODE.")
        return SimulatedLink()

    logger.info("[HAL] Scanning USB/Serial Ports for ELM327/STN Interface...")
    try:
        return ObdLink.open(config.get('port'), config.get('protocol', '6'))
    except Exception as e:
        logger.warning(f"[HAL] No hardware link ({e}). Falling back to SIMULATED link.")
        return SimulatedLink()
