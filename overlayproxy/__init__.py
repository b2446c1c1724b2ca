"""
A small HTTP/HTTPS forward proxy, dialing out either directly
or through an overlay (VPN) network.
"""

from ._proxy import (
    Router,
    OverlayProxy,
    SynchronousOverlayProxy,
)
from ._config import (
    Port,
    Configuration,
    OverlaySettings,
    ProxyConfig,
    parse_configuration_v1,
    load_configuration_from_environment,
    load_configuration_from_file,
    build_dialer,
    build_proxy_config,
)
from ._dialer import (
    Dialer,
    DirectDialer,
    OverlayDialer,
    OverlayNetwork,
    InterfaceBoundNetwork,
)
from ._auth import Credentials, authorize
from ._errors import (
    ProxyError,
    DialFailed,
    RoundTripFailed,
    HijackUnsupported,
    StartupConfigError,
)
