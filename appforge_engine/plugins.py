import re
from typing import Iterable, Tuple

from .models import ResolvedPlugin

# Pinned versions; an unpinned plugin would make the build service resolve "latest" at build time.
PLUGIN_VERSIONS = {
    'cordova-plugin-whitelist': '1.3.5',
    'cordova-plugin-splashscreen': '6.0.2',
    'cordova-plugin-statusbar': '4.0.0',
    'cordova-plugin-device': '2.1.0',
    'cordova-plugin-geolocation': '5.0.0',
    'cordova-plugin-camera': '7.0.0',
    'cordova-plugin-file': '8.0.1',
    'cordova-plugin-network-information': '3.0.0',
    'cordova-plugin-vibration': '4.0.0',
    'cordova-plugin-local-notification': '0.9.0-beta.2',
    'cordova-plugin-calendar': '5.1.5',
    'cordova-plugin-contacts': '4.0.0',
    'cordova-plugin-media': '7.0.0',
    'cordova-plugin-media-capture': '5.0.0',
    'cordova-plugin-barcodescanner': '0.7.4',
    'cordova-plugin-inappbrowser': '6.0.0',
}

DEFAULT_PLUGIN_VERSION = "1.0.0"
UNPINNED_SPECS = {"", "latest", "*", "x"}

# Always present in generated config.xml
BASE_PLUGINS = ('cordova-plugin-whitelist', 'cordova-plugin-statusbar')

_PLUGIN_ID_RE = re.compile(r"^(@[a-z0-9][a-z0-9._-]*/)?[a-z0-9][a-z0-9._-]*$")


def is_valid_plugin_id(plugin_id: str) -> bool:
    return bool(_PLUGIN_ID_RE.match(plugin_id))


def resolve_plugin(reference: str) -> ResolvedPlugin:
    """Resolves 'id' or 'id@spec' to a pinned ResolvedPlugin. Raises ValueError on a malformed id."""
    reference = reference.strip()
    plugin_id, spec = reference, ""
    # '@' at position 0 is an npm scope, not a version separator
    at = reference.rfind("@")
    if at > 0:
        plugin_id, spec = reference[:at], reference[at + 1:].strip()

    if not is_valid_plugin_id(plugin_id):
        raise ValueError(f"Invalid plugin id '{reference}'")

    if spec.lower() in UNPINNED_SPECS:
        spec = PLUGIN_VERSIONS.get(plugin_id, DEFAULT_PLUGIN_VERSION)
    return ResolvedPlugin(id=plugin_id, version=spec)


def resolve_plugins(references: Iterable[str]) -> Tuple[ResolvedPlugin, ...]:
    resolved = []
    seen = set()
    for ref in references:
        plugin = resolve_plugin(ref)
        if plugin.id in seen:
            continue
        seen.add(plugin.id)
        resolved.append(plugin)
    return tuple(resolved)
