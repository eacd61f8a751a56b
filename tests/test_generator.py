import json
import xml.etree.ElementTree as ET
from dataclasses import replace

import pytest

from appforge_engine.errors import GenerationError
from appforge_engine.generator import generate, normalize_name, package_identifier
from appforge_engine.paths import path_violation
from appforge_engine.plugins import DEFAULT_PLUGIN_VERSION, PLUGIN_VERSIONS, resolve_plugin
from appforge_engine.template_catalog import DEFAULT_TEMPLATES

from conftest import FakeClock, T0, make_template

WIDGET_NS = "{http://www.w3.org/ns/widgets}"


@pytest.mark.parametrize("template", DEFAULT_TEMPLATES, ids=lambda t: t.id)
def test_generated_paths_are_unique_relative_and_traversal_free(template, config):
    artifact = generate(template, config, clock=FakeClock())

    paths = list(artifact.file_tree.keys())
    assert len(paths) == len(set(paths))
    for path in paths:
        assert path_violation(path) is None, path
        assert not path.startswith("/")
        assert ".." not in path.split("/")


def test_package_identifiers_use_prefix_and_normalized_name(config):
    alpha = generate(make_template("Alpha"), config)
    beta = generate(make_template("Beta"), config)
    assert alpha.package_identifier == "com.acme.alpha"
    assert beta.package_identifier == "com.acme.beta"
    assert package_identifier("com.acme", "QR Scanner+ Pro!") == "com.acme.qrscannerpro"
    assert normalize_name("Task-Master_Pro 2") == "taskmasterpro2"


def test_output_is_deterministic_apart_from_created_at(config):
    template = DEFAULT_TEMPLATES[0]
    first = generate(template, config, clock=FakeClock(T0))
    later = FakeClock(T0)
    later.advance(86400)
    second = generate(template, config, clock=later)

    assert first.file_tree == second.file_tree
    assert first.created_at != second.created_at
    assert T0.isoformat() not in b"".join(first.file_tree.values()).decode("utf-8")


def test_unpinned_plugins_never_resolve_to_latest(config):
    template = make_template("Pinned", plugins=("cordova-plugin-camera", "cordova-plugin-unknown@latest",
                                                "cordova-plugin-device@"))
    artifact = generate(template, config)

    specs = {p.id: p.version for p in artifact.plugins}
    assert specs["cordova-plugin-camera"] == PLUGIN_VERSIONS["cordova-plugin-camera"]
    assert specs["cordova-plugin-unknown"] == DEFAULT_PLUGIN_VERSION
    assert specs["cordova-plugin-device"] == PLUGIN_VERSIONS["cordova-plugin-device"]
    for content in artifact.file_tree.values():
        assert b"latest" not in content


def test_explicit_plugin_version_is_kept():
    assert resolve_plugin("cordova-plugin-camera@6.0.0").version == "6.0.0"
    scoped = resolve_plugin("@acme/cordova-plugin-thing@2.1.0")
    assert scoped.id == "@acme/cordova-plugin-thing"
    assert scoped.version == "2.1.0"
    assert resolve_plugin("@acme/cordova-plugin-thing").version == DEFAULT_PLUGIN_VERSION


def test_config_xml_carries_package_id_and_pinned_plugins(config):
    template = make_template("Alpha", plugins=("cordova-plugin-geolocation",))
    artifact = generate(template, config)

    root = ET.fromstring(artifact.file_tree["config.xml"])
    assert root.get("id") == "com.acme.alpha"
    assert root.get("version") == "1.0.0"
    plugins = {p.get("name"): p.get("spec") for p in root.findall(f"{WIDGET_NS}plugin")}
    assert plugins["cordova-plugin-geolocation"] == PLUGIN_VERSIONS["cordova-plugin-geolocation"]
    assert "cordova-plugin-whitelist" in plugins

    package = json.loads(artifact.file_tree["package.json"])
    assert package["name"] == "com.acme.alpha"
    assert package["version"] == "1.0.0"


def test_markup_is_escaped(config):
    template = replace(make_template("Alpha"), display_name='A & <B> "C"', description="x < y")
    artifact = generate(template, config)

    ET.fromstring(artifact.file_tree["config.xml"])
    assert b"A &amp; &lt;B&gt;" in artifact.file_tree["www/index.html"]


@pytest.mark.parametrize("prefix", ["", "Com.Acme", "com..acme", "1com.acme", "com.acme."])
def test_invalid_prefix_is_a_configuration_error(config, prefix):
    with pytest.raises(GenerationError) as exc_info:
        generate(make_template("Alpha"), replace(config, package_prefix=prefix))
    assert exc_info.value.transient is False
    assert "package name" in str(exc_info.value)


def test_name_without_usable_characters_is_rejected(config):
    with pytest.raises(GenerationError, match="Invalid package name"):
        generate(make_template("!!!", template_id="bang"), config)


def test_missing_author_and_bad_email_are_rejected(config):
    with pytest.raises(GenerationError, match="Author"):
        generate(make_template("Alpha"), replace(config, author_name=" "))
    with pytest.raises(GenerationError, match="email"):
        generate(make_template("Alpha"), replace(config, author_email="not-an-email"))


def test_invalid_plugin_id_is_rejected(config):
    with pytest.raises(GenerationError, match="Invalid plugin id"):
        generate(make_template("Alpha", plugins=("Not A Plugin",)), config)
