import pytest

from appforge_engine.template_catalog import DEFAULT_TEMPLATES, TemplateCatalog

EXTRA = """
templates:
  - id: climate-monitor
    name: ClimateMonitor
    display_name: Climate Monitor 2
    description: Replaced
    category: weather
    icon: "x"
    color: "#000000"
  - id: habit-loop
    name: HabitLoop
    display_name: Habit Loop
    description: Track habits
    category: productivity
    icon: "y"
    color: "#111111"
    plugins: [cordova-plugin-local-notification]
    estimated_minutes: 2
  - id: broken
    name: Broken
"""


def test_defaults_are_loaded_when_directory_is_missing(tmp_path):
    catalog = TemplateCatalog(tmp_path / "nothing-here")
    assert len(catalog.list_templates()) == len(DEFAULT_TEMPLATES) == 10
    assert catalog.get_template("qr-scanner-plus").name == "QRScannerPlus"
    assert {t.id for t in catalog.list_templates("education")} == {"study-timer", "language-buddy"}


def test_yaml_templates_add_and_replace(tmp_path):
    (tmp_path / "extra.yaml").write_text(EXTRA, encoding="utf-8")
    (tmp_path / "bad.yaml").write_text("templates: [unclosed", encoding="utf-8")

    catalog = TemplateCatalog(tmp_path)

    assert catalog.get_template("climate-monitor").display_name == "Climate Monitor 2"
    habit = catalog.get_template("habit-loop")
    assert habit.plugins == ("cordova-plugin-local-notification",)
    assert habit.estimated_minutes == 2
    assert catalog.get_template("broken") is None
    assert len(catalog.list_templates()) == 11


def test_file_only_catalog(tmp_path):
    (tmp_path / "extra.yaml").write_text(EXTRA, encoding="utf-8")
    catalog = TemplateCatalog(tmp_path, include_defaults=False)
    assert [t.id for t in catalog.list_templates()] == ["climate-monitor", "habit-loop"]


def test_select_keeps_order_and_rejects_unknown_ids(tmp_path):
    catalog = TemplateCatalog(tmp_path)
    selected = catalog.select(["study-timer", "climate-monitor"])
    assert [t.id for t in selected] == ["study-timer", "climate-monitor"]

    with pytest.raises(ValueError, match="nope"):
        catalog.select(["climate-monitor", "nope"])
