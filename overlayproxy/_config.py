"""
Configuration: parsing settings, and turning them into a ProxyConfig.

Settings come from environment variables (or an env-file with the same
keys). Parsing is pure; only `build_dialer` touches the host.
"""

import base64
import binascii
import ipaddress
import logging
import os
import ssl
from dataclasses import dataclass
from typing import Mapping, NewType, Optional, Tuple

import dotenv

from ._auth import Credentials
from ._dialer import Dialer, DirectDialer, InterfaceBoundNetwork, OverlayDialer, parse_host_and_port
from ._errors import StartupConfigError


logger = logging.getLogger("overlayproxy")

Port = NewType("Port", int)

DEFAULT_PORT = Port(8080)
DEFAULT_DNS = "1.1.1.1"
WIREGUARD_KEY_LENGTH = 32


@dataclass(frozen=True)
class OverlaySettings:
    # Keys and DNS are checked here but consumed by the tunnel device setup, not by us.
    private_key: bytes
    peer_public_key: bytes
    peer_endpoint: Tuple[str, int]
    address: Optional[str] = None
    dns: str = DEFAULT_DNS

    def __repr__(self) -> str:
        host, port = self.peer_endpoint
        return f"OverlaySettings(address={self.address!r}, peer_endpoint='{host}:{port}', dns={self.dns!r})"


@dataclass(frozen=True)
class Configuration:
    credentials: Credentials = Credentials()
    port: Port = DEFAULT_PORT
    overlay: Optional[OverlaySettings] = None


@dataclass(frozen=True)
class ProxyConfig:
    """
    Everything the proxy engine needs, built once at startup.
    `credentials` with an empty username means no authentication.
    """
    dialer: Dialer
    credentials: Credentials = Credentials()
    listen_port: Port = DEFAULT_PORT
    upstream_ssl_context: Optional[ssl.SSLContext] = None  # for https:// origins; system trust if None


def decode_key(value: str, name: str) -> bytes:
    try:
        key = base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise StartupConfigError(f"{name}: invalid key (base64 decode failed): {e}") from None
    if len(key) != WIREGUARD_KEY_LENGTH:
        raise StartupConfigError(f"{name}: key must be {WIREGUARD_KEY_LENGTH} bytes, got {len(key)}")
    return key


def parse_overlay_settings(env: Mapping[str, str]) -> Optional[OverlaySettings]:
    private_key = env.get("WIREGUARD_INTERFACE_PRIVATE_KEY", "")
    endpoint = env.get("WIREGUARD_PEER_ENDPOINT", "")
    if not private_key or not endpoint:
        return None

    try:
        peer_endpoint = parse_host_and_port(endpoint)
    except ValueError as e:
        raise StartupConfigError(f"WIREGUARD_PEER_ENDPOINT: {e}") from None

    address = env.get("WIREGUARD_INTERFACE_ADDRESS", "") or None
    if address is not None:
        # CIDR notation is accepted, e.g. 10.0.0.2/32
        address = address.split("/")[0]
        try:
            ipaddress.ip_address(address)
        except ValueError as e:
            raise StartupConfigError(f"WIREGUARD_INTERFACE_ADDRESS: {e}") from None

    dns = env.get("WIREGUARD_INTERFACE_DNS", "") or DEFAULT_DNS
    try:
        ipaddress.ip_address(dns)
    except ValueError as e:
        logger.warning("Failed to parse DNS IP, using default %s: %s", DEFAULT_DNS, e)
        dns = DEFAULT_DNS

    return OverlaySettings(
        private_key=decode_key(private_key, "WIREGUARD_INTERFACE_PRIVATE_KEY"),
        peer_public_key=decode_key(env.get("WIREGUARD_PEER_PUBLIC_KEY", ""), "WIREGUARD_PEER_PUBLIC_KEY"),
        peer_endpoint=peer_endpoint,
        address=address,
        dns=dns,
    )


def parse_configuration_v1(env: Mapping[str, str]) -> Configuration:
    """
    Parse settings from a mapping of environment variables.

    Raises StartupConfigError (a ValueError) on invalid values.
    """
    port_string = env.get("PORT", "") or str(DEFAULT_PORT)
    if not port_string.isdigit() or int(port_string) not in range(1, 65536):
        raise StartupConfigError(f"PORT: invalid port number: {port_string!r}")

    return Configuration(
        credentials=Credentials(env.get("PROXY_USER", ""), env.get("PROXY_PASS", "")),
        port=Port(int(port_string)),
        overlay=parse_overlay_settings(env),
    )


def load_configuration_from_environment() -> Configuration:
    return parse_configuration_v1(os.environ)


def read_env_file(path: str) -> Mapping[str, str]:
    """Read a dotenv-style file of `KEY=VALUE` lines."""
    if not os.path.isfile(path):
        raise StartupConfigError(f"{path}: no such file")
    values = dotenv.dotenv_values(path, encoding="utf-8")
    missing = [key for key, value in values.items() if value is None]
    if missing:
        raise StartupConfigError(f"{path}: expected KEY=VALUE for {', '.join(missing)}")
    return values


def load_configuration_from_file(path: str) -> Configuration:
    """Like `load_configuration_from_environment`, but from an env-file."""
    return parse_configuration_v1(read_env_file(path))


def build_dialer(configuration: Configuration) -> Dialer:
    """
    Pick the process-wide dialer. Raises StartupConfigError if the overlay
    is configured but not usable; nothing should listen in that case.
    """
    overlay = configuration.overlay
    if overlay is None:
        logger.info("Overlay config missing, running in DIRECT mode (no VPN)")
        return DirectDialer()

    if overlay.address is None:
        raise StartupConfigError("WIREGUARD_INTERFACE_ADDRESS is required to route through the overlay")

    host, port = overlay.peer_endpoint
    logger.info("Overlay peer endpoint: %s:%d, local address: %s, DNS: %s", host, port, overlay.address, overlay.dns)
    dialer = OverlayDialer(InterfaceBoundNetwork(overlay.address))
    logger.info("Overlay network ready - all outbound traffic is routed through the tunnel")
    return dialer


def build_proxy_config(configuration: Configuration) -> ProxyConfig:
    return ProxyConfig(
        dialer=build_dialer(configuration),
        credentials=configuration.credentials,
        listen_port=configuration.port,
    )
