"""Turns a template descriptor plus the batch config into an in-memory project tree.

Everything here is pure: no network, no disk. The only time-dependent value is
``GeneratedArtifact.created_at``, which comes from the injected clock and is
never written into file contents, so two runs over the same inputs produce
byte-identical trees.
"""
import html
import json
import re
from typing import Dict, Optional
from xml.sax.saxutils import escape as xml_escape, quoteattr

from .clock import Clock
from .errors import GenerationError
from .logger_setup import logger
from .models import GeneratedArtifact, GlobalConfig, TemplateDescriptor
from .paths import check_tree_paths
from .plugins import BASE_PLUGINS, resolve_plugins

PACKAGE_PREFIX_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ANDROID_MIN_SDK = 24
ANDROID_TARGET_SDK = 35


def normalize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def package_identifier(prefix: str, name: str) -> str:
    return f"{prefix}.{normalize_name(name)}"


def _validate_inputs(template: TemplateDescriptor, config: GlobalConfig):
    if not template.id or not template.id.strip():
        raise GenerationError("Template has no id")
    if not template.name or not template.name.strip():
        raise GenerationError(f"Template '{template.id}' has no name")
    if not normalize_name(template.name):
        raise GenerationError(
            f"Invalid package name: template name '{template.name}' has no [a-z0-9] characters")
    if not PACKAGE_PREFIX_RE.match(config.package_prefix or ""):
        raise GenerationError(
            f"Invalid package name prefix '{config.package_prefix}' (expected e.g. 'com.example')")
    if not config.author_name or not config.author_name.strip():
        raise GenerationError("Author name is required")
    if not EMAIL_RE.match(config.author_email or ""):
        raise GenerationError(f"Invalid author email '{config.author_email}'")


def generate(template: TemplateDescriptor, config: GlobalConfig, clock: Optional[Clock] = None) -> GeneratedArtifact:
    """Builds the project tree for one template. Raises GenerationError on malformed input."""
    _validate_inputs(template, config)
    clock = clock or Clock()

    try:
        plugins = resolve_plugins(template.plugins)
    except ValueError as e:
        raise GenerationError(f"Template '{template.id}': {e}")

    package_id = package_identifier(config.package_prefix, template.name)
    ctx = _TemplateContext(template, config, package_id, plugins)

    files: Dict[str, str] = {
        'package.json': ctx.package_json(),
        'config.xml': ctx.config_xml(),
        '.gitignore': GITIGNORE,
        'hooks/README.md': "# Cordova Hooks\n\nThis directory contains custom hooks for the Cordova build process.\n",
        'www/index.html': ctx.index_html(),
        'www/css/index.css': ctx.index_css(),
        'www/js/index.js': ctx.index_js(),
        'README.md': ctx.readme(),
        'platforms/.gitkeep': "",
        'plugins/.gitkeep': "",
    }

    problems = check_tree_paths(files.keys())
    if problems:
        raise GenerationError(f"Generated tree for '{template.id}' has invalid paths: {problems}")

    file_tree = {path: content.encode("utf-8") for path, content in files.items()}
    logger.debug(f"Generated {len(file_tree)} files for {template.id} ({package_id}), "
                 f"plugins: {[p.spec for p in plugins]}")
    return GeneratedArtifact(
        template_id=template.id,
        file_tree=file_tree,
        package_identifier=package_id,
        plugins=plugins,
        created_at=clock.now(),
    )


class _TemplateContext:
    def __init__(self, template: TemplateDescriptor, config: GlobalConfig, package_id: str, plugins):
        self.t = template
        self.c = config
        self.package_id = package_id
        self.plugins = plugins

    def package_json(self) -> str:
        app_slug = normalize_name(self.t.name)
        return json.dumps({
            "name": self.package_id,
            "displayName": self.t.display_name,
            "version": self.c.app_version,
            "description": self.t.description,
            "main": "index.js",
            "scripts": {
                "build": "cordova build",
                "build:android": "cordova build android",
                "build:android:release": "cordova build android --release",
                "run:android": "cordova run android",
            },
            "keywords": ["ecosystem:cordova", self.t.category, app_slug],
            "author": f"{self.c.author_name} <{self.c.author_email}>",
            "license": "MIT",
            "devDependencies": {"cordova-android": "^14.0.1"},
            "cordova": {
                "platforms": ["android"],
                "plugins": {p.id: {} for p in self.plugins},
            },
        }, indent=2) + "\n"

    def _plugin_lines(self):
        lines = []
        base = resolve_plugins(BASE_PLUGINS)
        base_ids = {p.id for p in base}
        for plugin in base + tuple(p for p in self.plugins if p.id not in base_ids):
            lines.append(f'    <plugin name={quoteattr(plugin.id)} spec={quoteattr(plugin.version)} />')
        return "\n".join(lines)

    def config_xml(self) -> str:
        densities = ("ldpi", "mdpi", "hdpi", "xhdpi", "xxhdpi", "xxxhdpi")
        icons = "\n".join(f'        <icon density="{d}" src="www/img/logo.png" />' for d in densities)
        author_href = quoteattr("https://github.com/" + self.c.github_username)
        return f"""<?xml version='1.0' encoding='utf-8'?>
<widget id={quoteattr(self.package_id)} version={quoteattr(self.c.app_version)} xmlns="http://www.w3.org/ns/widgets" xmlns:cdv="http://cordova.apache.org/ns/1.0">
    <name>{xml_escape(self.t.display_name)}</name>
    <description>{xml_escape(self.t.description)}</description>
    <author email={quoteattr(self.c.author_email)} href={author_href}>
        {xml_escape(self.c.author_name)}
    </author>
    <content src="index.html" />
    <access origin="*" />
    <allow-intent href="http://*/*" />
    <allow-intent href="https://*/*" />
    <platform name="android">
        <allow-intent href="market:*" />
{icons}
    </platform>
    <preference name="DisallowOverscroll" value="true" />
    <preference name="android-minSdkVersion" value="{ANDROID_MIN_SDK}" />
    <preference name="android-targetSdkVersion" value="{ANDROID_TARGET_SDK}" />
    <preference name="Orientation" value="portrait" />
{self._plugin_lines()}
</widget>
"""

    def index_html(self) -> str:
        features = "\n".join(
            f'            <li class="feature-item">{html.escape(f)}</li>' for f in self.t.features)
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0, user-scalable=no">
    <meta http-equiv="Content-Security-Policy" content="default-src 'self' data: gap: 'unsafe-inline'; img-src 'self' data: content:;">
    <title>{html.escape(self.t.display_name)}</title>
    <link rel="stylesheet" href="css/index.css">
</head>
<body>
    <header class="header">
        <span class="app-icon">{html.escape(self.t.icon)}</span>
        <h1 class="app-title">{html.escape(self.t.display_name)}</h1>
        <p class="app-subtitle">{html.escape(self.t.description)}</p>
    </header>
    <main>
        <ul class="features-list">
{features}
        </ul>
    </main>
    <script src="cordova.js"></script>
    <script src="js/index.js"></script>
</body>
</html>
"""

    def index_css(self) -> str:
        return f""":root {{
    --primary-color: {self.t.color};
}}

body {{
    margin: 0;
    font-family: -apple-system, "Segoe UI", Roboto, sans-serif;
}}

.header {{
    background: var(--primary-color);
    color: #fff;
    padding: 24px 16px;
}}
"""

    def index_js(self) -> str:
        return f"""document.addEventListener('deviceready', onDeviceReady, false);

function onDeviceReady() {{
    console.log('{self.package_id} running on cordova-' + cordova.platformId + '@' + cordova.version);
}}
"""

    def readme(self) -> str:
        features = "\n".join(f"- {f}" for f in self.t.features) or "- Mobile optimized"
        plugins = "\n".join(f"- `{p.spec}`" for p in self.plugins) or "- none"
        return f"""# {self.t.display_name}

{self.t.description}

- **Package Name:** `{self.package_id}`
- **Category:** {self.t.category}
- **Version:** {self.c.app_version}

## Features

{features}

## Plugins

{plugins}

## Build

```bash
npm install
cordova platform add android
cordova build android
```

## Author

{self.c.author_name} <{self.c.author_email}>
"""


GITIGNORE = """# Cordova
platforms/
plugins/
node_modules/

# IDE
.vscode/
.idea/

# OS
.DS_Store
Thumbs.db

# Logs
*.log
"""
