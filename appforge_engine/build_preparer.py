import base64
from typing import Dict, Tuple, Union

import yaml

from .errors import PreparationError
from .logger_setup import logger
from .models import GeneratedArtifact, GlobalConfig, PreparedArtifact, ResolvedPlugin
from .paths import check_tree_paths

CI_MANIFEST_PATH = "codemagic.yaml"
DEFAULT_ICON_PATH = "www/img/logo.png"
WEB_ROOT = "www/"

# Files and directories that belong at the project root; everything else is a web asset.
ROOT_FILES = {"config.xml", "package.json", ".gitignore", "README.md", CI_MANIFEST_PATH, "build.json"}
ROOT_DIRS = ("www/", "hooks/", "res/", "platforms/", "plugins/")

# 1x1 transparent PNG used until a real icon is supplied
DEFAULT_ICON = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)

ARTIFACT_GLOBS = [
    "platforms/android/app/build/outputs/bundle/release/app-release.aab",
    "platforms/android/app/build/outputs/apk/release/app-release.apk",
]


def canonical_path(path: str) -> str:
    if path in ROOT_FILES or path.startswith(ROOT_DIRS):
        return path
    return WEB_ROOT + path


def default_ci_manifest(config: GlobalConfig, plugins: Tuple[ResolvedPlugin, ...]) -> str:
    plugin_script = "\n".join(f"cordova plugin add {p.spec}" for p in plugins)
    scripts = [
        {
            "name": "Install Node.js & Cordova",
            "script": "npm install -g cordova",
        },
        {
            "name": "Install project dependencies",
            "script": "npm install",
        },
    ]
    if plugins:
        scripts.append({"name": "Add pinned plugins", "script": plugin_script})
    scripts.append({
        "name": "Add Android platform & build release",
        "script": "cordova platform add android\ncordova build android --release",
    })
    manifest = {
        "workflows": {
            config.workflow_id: {
                "name": "Build Cordova Android App",
                "max_build_duration": 60,
                "environment": {"node": "18"},
                "triggering": {"events": ["push"], "branch_patterns": [{"pattern": config.branch}]},
                "scripts": scripts,
                "artifacts": list(ARTIFACT_GLOBS),
            }
        }
    }
    return yaml.safe_dump(manifest, sort_keys=False, default_flow_style=False)


def prepare(artifact: Union[GeneratedArtifact, PreparedArtifact], config: GlobalConfig) -> PreparedArtifact:
    """Relocates an artifact into the deployable layout and fills in the CI manifest and icon if missing.

    Running it on its own output returns an equal artifact.
    """
    problems = check_tree_paths(artifact.file_tree.keys())
    if problems:
        raise PreparationError(f"Artifact '{artifact.template_id}' has invalid paths: {problems}")

    # Correctly placed files first so they win over relocated ones and keep their position
    relocated: Dict[str, bytes] = {}
    for path, content in artifact.file_tree.items():
        if canonical_path(path) == path:
            relocated[path] = content
    moved = 0
    for path, content in artifact.file_tree.items():
        target = canonical_path(path)
        if target == path:
            continue
        if target in relocated:
            raise PreparationError(
                f"Artifact '{artifact.template_id}': cannot move '{path}' to '{target}', that path already exists")
        relocated[target] = content
        moved += 1

    if CI_MANIFEST_PATH not in relocated:
        override = config.ci_manifest_override
        if override is None:
            body = default_ci_manifest(config, artifact.plugins)
        elif not override.strip():
            raise PreparationError(
                f"Artifact '{artifact.template_id}': the configured CI manifest override is empty")
        else:
            body = override
            logger.debug(f"Using caller-supplied CI manifest for {artifact.template_id}")
        relocated[CI_MANIFEST_PATH] = body.encode("utf-8")
    elif not relocated[CI_MANIFEST_PATH].strip():
        raise PreparationError(f"Artifact '{artifact.template_id}' has an empty {CI_MANIFEST_PATH}")

    if DEFAULT_ICON_PATH not in relocated:
        relocated[DEFAULT_ICON_PATH] = DEFAULT_ICON

    if moved:
        logger.debug(f"Moved {moved} file(s) under {WEB_ROOT} for {artifact.template_id}")

    return PreparedArtifact(
        template_id=artifact.template_id,
        file_tree=relocated,
        package_identifier=artifact.package_identifier,
        plugins=artifact.plugins,
        created_at=artifact.created_at,
        ci_manifest_path=CI_MANIFEST_PATH,
    )
