"""devbox-egress - Network egress control for development containers.

Every container that needs network access gets its own isolated bridge
network and a dnsmasq sidecar acting as its only resolver. Profiles decide
the default policy; per-container allow and block lists refine it and can be
changed while the container runs.

Key modules:

- :mod:`devbox_egress.controller` - Provision, reconfigure and destroy egress control
- :mod:`devbox_egress.profiles` - Profile file format and registry
- :mod:`devbox_egress.rules` - Per-container mutable allow/block lists
- :mod:`devbox_egress.network` - Isolated per-container networks
- :mod:`devbox_egress.sidecar` - dnsmasq config rendering and sidecar lifecycle
- :mod:`devbox_egress.packet_filter` - Optional iptables hardening
- :mod:`devbox_egress.locks` - Cross-process per-container locks
"""

__version__ = "0.1.0"
