"""BLE capability boundary and its bleak implementation."""

from __future__ import annotations

import asyncio
import contextlib
import importlib
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from loguru import logger

from veloerg.ble.constants import FTMS_SERVICE_UUID
from veloerg.core.errors import ConnectionLost, DeviceUnavailable

_bleak: Any
try:
    _bleak = importlib.import_module("bleak")
except ImportError:  # pragma: no cover - runtime dependency guard
    _bleak = None


NotificationCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[], None]

_BLE_COMPANY_IDS: dict[int, str] = {
    0x004C: "Apple",
    0x0006: "Microsoft",
    0x0075: "Samsung",
    0x0087: "Garmin",
    0x00D2: "Wahoo Fitness",
    0x011F: "Tacx",
    0x04D8: "Elite",
}

_BRAND_HINTS: tuple[tuple[str, str], ...] = (
    ("wahoo", "Wahoo Fitness"),
    ("kickr", "Wahoo Fitness"),
    ("elite", "Elite"),
    ("direto", "Elite"),
    ("suito", "Elite"),
    ("tacx", "Tacx"),
    ("saris", "Saris"),
    ("zwift", "Zwift"),
)


def _resolve_manufacturer(name: str, manufacturer_data: Any | None) -> str | None:
    if isinstance(manufacturer_data, dict) and manufacturer_data:
        for key in sorted(manufacturer_data.keys()):
            if isinstance(key, int):
                return _BLE_COMPANY_IDS.get(key, f"MFG 0x{key:04X}")
    lowered = name.lower()
    for hint, brand in _BRAND_HINTS:
        if hint in lowered:
            return brand
    return None


@dataclass(frozen=True)
class ScannedDevice:
    name: str
    address: str
    rssi: int
    has_ftms: bool
    manufacturer: str | None = None


@dataclass(frozen=True)
class DeviceFilter:
    """Match by address or name, or any FTMS advertiser when target is None/"auto"."""

    target: str | None = None
    service_uuid: str = FTMS_SERVICE_UUID

    @property
    def wants_any(self) -> bool:
        return self.target is None or self.target == "auto"

    def matches(self, name: str | None, address: str, service_uuids: list[str]) -> bool:
        if self.wants_any:
            return self.service_uuid in {u.lower() for u in service_uuids}
        wanted = self.target.lower()  # type: ignore[union-attr]
        return address.lower() == wanted or (name or "").lower() == wanted


@dataclass(frozen=True)
class DeviceHandle:
    name: str
    address: str
    native: Any = None

    @property
    def label(self) -> str:
        return f"{self.name} ({self.address})"


class BleCapability(Protocol):
    """What the FTMS session needs from a BLE stack.

    A real adapter wraps one physical radio; the simulated trainer implements
    the same surface so sessions can run without hardware.
    """

    async def scan(self, timeout: float) -> list[ScannedDevice]: ...

    async def scan_for_device(
        self, device_filter: DeviceFilter, timeout: float
    ) -> Optional[DeviceHandle]: ...

    async def connect(
        self,
        device: DeviceHandle,
        *,
        on_disconnect: DisconnectCallback,
        timeout: float,
    ) -> Any: ...

    async def subscribe(
        self, connection: Any, characteristic: str, callback: NotificationCallback
    ) -> None: ...

    async def write(self, connection: Any, characteristic: str, data: bytes) -> None: ...

    async def read(self, connection: Any, characteristic: str) -> bytes: ...

    async def disconnect(self, connection: Any) -> None: ...


def _ensure_bleak_available() -> None:
    if _bleak is None:
        raise DeviceUnavailable("bleak is not installed. Run: pip install bleak")


class BleakCapability:
    """BleCapability backed by bleak's BleakScanner/BleakClient."""

    def __init__(self, ble_pair: bool = True) -> None:
        self._ble_pair = ble_pair
        self._scan_cache: dict[str, Any] = {}

    async def scan(self, timeout: float = 5.0) -> list[ScannedDevice]:
        _ensure_bleak_available()
        discovered = await _bleak.BleakScanner.discover(timeout=timeout, return_adv=True)
        devices: list[ScannedDevice] = []
        self._scan_cache = {}

        for _, (device, adv_data) in discovered.items():
            uuids = {u.lower() for u in (adv_data.service_uuids or [])}
            self._scan_cache[device.address.lower()] = device
            devices.append(
                ScannedDevice(
                    name=device.name or "Unknown",
                    address=device.address,
                    rssi=adv_data.rssi,
                    has_ftms=FTMS_SERVICE_UUID in uuids,
                    manufacturer=_resolve_manufacturer(
                        device.name or "",
                        getattr(adv_data, "manufacturer_data", None),
                    ),
                )
            )

        devices.sort(key=lambda d: d.rssi, reverse=True)
        return devices

    async def scan_for_device(
        self, device_filter: DeviceFilter, timeout: float
    ) -> Optional[DeviceHandle]:
        _ensure_bleak_available()
        if not device_filter.wants_any:
            target = device_filter.target or ""
            cached = self._scan_cache.get(target.lower())
            if cached is None:
                cached = await _bleak.BleakScanner.find_device_by_filter(
                    lambda d, adv: device_filter.matches(
                        d.name, d.address, list(adv.service_uuids or [])
                    ),
                    timeout=timeout,
                )
            if cached is None:
                # Some trainers are powered on but not advertising continuously.
                # BleakClient accepts a direct address string with BlueZ.
                return DeviceHandle(name="Unknown", address=target, native=target)
            return DeviceHandle(
                name=cached.name or "Unknown", address=cached.address, native=cached
            )

        discovered = await _bleak.BleakScanner.discover(timeout=timeout, return_adv=True)
        for _, (device, adv_data) in discovered.items():
            if device_filter.matches(
                device.name, device.address, list(adv_data.service_uuids or [])
            ):
                return DeviceHandle(
                    name=device.name or "Unknown", address=device.address, native=device
                )
        return None

    async def connect(
        self,
        device: DeviceHandle,
        *,
        on_disconnect: DisconnectCallback,
        timeout: float,
    ) -> Any:
        _ensure_bleak_available()

        def _disconnected(_client: Any) -> None:
            on_disconnect()

        client = self._build_bleak_client(device.native, _disconnected, pair=self._ble_pair)
        try:
            await client.connect(timeout=timeout)
        except Exception as first_exc:
            # Some platforms/backends/devices don't support pairing from API.
            # Retry without the pairing request.
            if not self._ble_pair:
                raise DeviceUnavailable(f"Unable to connect to {device.label}") from first_exc
            with contextlib.suppress(Exception):
                await client.disconnect()
            client = self._build_bleak_client(device.native, _disconnected, pair=False)
            try:
                await client.connect(timeout=timeout)
            except Exception as exc:
                raise DeviceUnavailable(f"Unable to connect to {device.label}") from exc

        # Force service discovery before any characteristic access.
        _ = client.services
        return client

    def _build_bleak_client(
        self, device: Any, disconnected_callback: Callable[[Any], None], *, pair: bool
    ) -> Any:
        if pair:
            try:
                return _bleak.BleakClient(
                    device, disconnected_callback=disconnected_callback, pair=True
                )
            except TypeError:
                logger.debug("pair=True unsupported by current bleak backend, using plain connect")
        return _bleak.BleakClient(device, disconnected_callback=disconnected_callback)

    async def subscribe(
        self, connection: Any, characteristic: str, callback: NotificationCallback
    ) -> None:
        self._require_connected(connection)

        def _on_notify(_sender: object, data: bytearray) -> None:
            callback(bytes(data))

        await connection.start_notify(characteristic, _on_notify)

    async def write(self, connection: Any, characteristic: str, data: bytes) -> None:
        self._require_connected(connection)
        await connection.write_gatt_char(characteristic, data, response=True)

    async def read(self, connection: Any, characteristic: str) -> bytes:
        self._require_connected(connection)
        return bytes(await connection.read_gatt_char(characteristic))

    async def disconnect(self, connection: Any) -> None:
        if connection is None or not connection.is_connected:
            return
        await connection.disconnect()

    @staticmethod
    def _require_connected(connection: Any) -> None:
        if connection is None or not connection.is_connected:
            raise ConnectionLost("BLE link is not connected")


async def wait_bounded(coro: Any, timeout: float, what: str) -> None:
    """Await coro for at most timeout seconds, logging instead of hanging."""
    try:
        await asyncio.wait_for(coro, timeout=timeout)
    except TimeoutError:
        logger.warning(f"{what} did not finish within {timeout:.1f}s, giving up")
