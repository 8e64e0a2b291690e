"""Update Relay - License and update distribution service.

Answers, for a given extension and caller-supplied license key:
- whether an update is available
- the metadata for an "about this plugin" page
- whether a license key is valid and bound to a deployment site
- a download location gated by that license

Usage:
    from update_relay.config import ServiceConfig
    from update_relay.service import UpdateService
    from update_relay.stores import InMemoryCatalog, InMemoryLicenseStore

    service = UpdateService.build(
        ServiceConfig(),
        catalog=InMemoryCatalog.from_yaml("catalog.yaml"),
        licenses=InMemoryLicenseStore.from_yaml("licenses.yaml"),
    )
    response = service.handle("updates/check", {"slug": "...", "version": "1.0.0"}, "203.0.113.7")

For installation:
    pip install update-relay
    pip install "update-relay[test]"      # + test tooling
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("update-relay")
except PackageNotFoundError:
    # Package not installed (running from a source checkout)
    __version__ = "0.0.0.dev0"

__all__ = [
    "__version__",
]
