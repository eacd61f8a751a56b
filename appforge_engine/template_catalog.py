import yaml
from pathlib import Path
from typing import Dict, List, Optional

from .logger_setup import logger
from .models import TemplateDescriptor

TEMPLATES_CONFIG_DIR_NAME = "templates_config"

REQUIRED_FIELDS = ('id', 'name', 'display_name', 'description', 'category', 'icon', 'color')

DEFAULT_TEMPLATES = (
    TemplateDescriptor(
        id='climate-monitor', name='ClimateMonitor', display_name='Climate Monitor',
        description='Weather and climate monitoring with real-time data, forecasts, and environmental insights',
        category='weather', icon='🌤️', color='#4A90E2',
        plugins=('cordova-plugin-geolocation', 'cordova-plugin-network-information', 'cordova-plugin-device'),
        estimated_minutes=3,
        features=('Real-time weather data', '7-day forecasts', 'Climate insights', 'Location-based alerts'),
    ),
    TemplateDescriptor(
        id='task-master-pro', name='TaskMasterPro', display_name='Task Master Pro',
        description='Advanced productivity and task management application with project tracking and team collaboration',
        category='productivity', icon='✅', color='#50C878',
        plugins=('cordova-plugin-local-notification', 'cordova-plugin-calendar', 'cordova-plugin-file'),
        estimated_minutes=4,
        features=('Task organization', 'Project management', 'Time tracking', 'Team collaboration'),
    ),
    TemplateDescriptor(
        id='qr-scanner-plus', name='QRScannerPlus', display_name='QR Scanner Plus',
        description='QR code and barcode scanner with advanced features, history tracking, and batch scanning',
        category='utilities', icon='📱', color='#FF6B6B',
        plugins=('phonegap-plugin-barcodescanner', 'cordova-plugin-camera', 'cordova-plugin-flashlight'),
        estimated_minutes=3,
        features=('QR code scanning', 'Barcode recognition', 'History tracking', 'Batch scanning'),
    ),
    TemplateDescriptor(
        id='expense-tracker', name='ExpenseTracker', display_name='Expense Tracker',
        description='Personal finance and expense tracking application with receipt scanning and budget management',
        category='finance', icon='💰', color='#FFD93D',
        plugins=('cordova-plugin-camera', 'cordova-plugin-file', 'cordova-plugin-local-notification'),
        estimated_minutes=4,
        features=('Expense tracking', 'Budget management', 'Receipt scanning', 'Financial reports'),
    ),
    TemplateDescriptor(
        id='fitness-companion', name='FitnessCompanion', display_name='Fitness Companion',
        description='Health and fitness tracking with workout plans, progress analytics, and goal setting',
        category='health', icon='💪', color='#FF4757',
        plugins=('cordova-plugin-health', 'cordova-plugin-pedometer', 'cordova-plugin-geolocation'),
        estimated_minutes=5,
        features=('Workout tracking', 'Health monitoring', 'Progress analytics', 'Goal setting'),
    ),
    TemplateDescriptor(
        id='study-timer', name='StudyTimer', display_name='Study Timer',
        description='Pomodoro timer and study session management with focus tracking and break reminders',
        category='education', icon='⏰', color='#3742FA',
        plugins=('cordova-plugin-local-notification', 'cordova-plugin-vibration', 'cordova-plugin-background-mode'),
        estimated_minutes=3,
        features=('Pomodoro technique', 'Study sessions', 'Break reminders', 'Progress tracking'),
    ),
    TemplateDescriptor(
        id='recipe-vault', name='RecipeVault', display_name='Recipe Vault',
        description='Recipe management and cooking assistant with meal planning and shopping lists',
        category='food', icon='👨‍🍳', color='#FF9F43',
        plugins=('cordova-plugin-camera', 'cordova-plugin-file', 'cordova-plugin-social-sharing'),
        estimated_minutes=4,
        features=('Recipe storage', 'Cooking timers', 'Shopping lists', 'Meal planning'),
    ),
    TemplateDescriptor(
        id='password-guardian', name='PasswordGuardian', display_name='Password Guardian',
        description='Secure password manager and generator with biometric authentication and encrypted storage',
        category='security', icon='🔐', color='#2F3542',
        plugins=('cordova-plugin-secure-storage', 'cordova-plugin-fingerprint-aio'),
        estimated_minutes=5,
        features=('Password storage', 'Secure encryption', 'Biometric unlock', 'Password generation'),
    ),
    TemplateDescriptor(
        id='music-player-pro', name='MusicPlayerPro', display_name='Music Player Pro',
        description='Advanced music player with playlist management, audio effects, and library organization',
        category='entertainment', icon='🎵', color='#8E44AD',
        plugins=('cordova-plugin-media', 'cordova-plugin-file', 'cordova-plugin-music-controls'),
        estimated_minutes=5,
        features=('Music playback', 'Playlist creation', 'Audio effects', 'Library management'),
    ),
    TemplateDescriptor(
        id='language-buddy', name='LanguageBuddy', display_name='Language Buddy',
        description='Interactive language learning with flashcards, quizzes, and speech recognition',
        category='education', icon='🗣️', color='#00D2D3',
        plugins=('cordova-plugin-media', 'cordova-plugin-tts', 'cordova-plugin-speech-recognition'),
        estimated_minutes=4,
        features=('Language lessons', 'Flashcard system', 'Speech recognition', 'Progress tracking'),
    ),
)


def parse_template(data: dict, source: str) -> TemplateDescriptor:
    if not isinstance(data, dict):
        raise ValueError(f"{source}: each template must be a mapping")
    missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
    if missing:
        raise ValueError(f"{source}: template '{data.get('id', '?')}' is missing {', '.join(missing)}")
    plugins = data.get('plugins') or []
    if not isinstance(plugins, list) or not all(isinstance(p, str) for p in plugins):
        raise ValueError(f"{source}: template '{data['id']}' plugins must be a list of plugin ids")
    return TemplateDescriptor.from_dict(data)


class TemplateCatalog:
    """Built-in templates plus any `templates:` lists found in <templates_dir>/*.yaml.

    A file template with the id of a built-in one replaces it.
    """

    def __init__(self, templates_dir: Optional[Path] = None, include_defaults: bool = True):
        if templates_dir:
            self.templates_dir = templates_dir
        else:
            self.templates_dir = Path(__file__).resolve().parent.parent / TEMPLATES_CONFIG_DIR_NAME
        self.include_defaults = include_defaults

        self.templates: Dict[str, TemplateDescriptor] = {}
        self.load_templates()

    def load_templates(self):
        self.templates = {t.id: t for t in DEFAULT_TEMPLATES} if self.include_defaults else {}
        if not self.templates_dir.exists() or not self.templates_dir.is_dir():
            logger.debug(f"No templates directory at {self.templates_dir}, using {len(self.templates)} built-in templates")
            return

        for config_file in sorted(self.templates_dir.glob("*.yaml")):
            for template in self._parse_templates_file(config_file):
                if template.id in self.templates:
                    logger.warning(f"Template '{template.id}' from {config_file.name} replaces an earlier definition.")
                self.templates[template.id] = template
        logger.info(f"Loaded {len(self.templates)} templates.")

    def _parse_templates_file(self, config_file: Path) -> List[TemplateDescriptor]:
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as ye:
            logger.error(f"YAML syntax error in template file {config_file.name}: {ye}")
            return []

        entries = raw.get('templates') if isinstance(raw, dict) else None
        if not isinstance(entries, list):
            logger.error(f"Template file {config_file.name} has no 'templates' list")
            return []

        parsed = []
        for entry in entries:
            try:
                parsed.append(parse_template(entry, config_file.name))
            except (ValueError, TypeError) as ve:
                logger.error(f"Skipping template: {ve}")
        return parsed

    def get_template(self, template_id: str) -> Optional[TemplateDescriptor]:
        return self.templates.get(template_id)

    def list_templates(self, category: Optional[str] = None) -> List[TemplateDescriptor]:
        templates = list(self.templates.values())
        if category:
            templates = [t for t in templates if t.category == category]
        return templates

    def select(self, template_ids: List[str]) -> List[TemplateDescriptor]:
        """Templates for the given ids, in the given order. Raises ValueError naming unknown ids."""
        unknown = [tid for tid in template_ids if tid not in self.templates]
        if unknown:
            raise ValueError(f"Unknown template id(s): {', '.join(unknown)}")
        return [self.templates[tid] for tid in template_ids]
