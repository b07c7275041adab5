"""Settings library for the sync engine configuration.

Provides:
    - Schema validation and enforcement for the sync.json structure.
    - Loading, saving, reverting, and managing engine settings.
    - Application data paths for the settings file, local database and remote credentials.
"""

import json
import logging
import os
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..core.model import Category
from ..status import status

app_name: str = 'MonthFinance'

#: Environment variable overriding the application data directory
DATA_DIR_ENV_KEY: str = 'MONTHFINANCE_DATA_DIR'

BACKOFF_STRATEGIES: List[str] = ['none', 'exponential']
REMOTE_BACKENDS: List[str] = ['memory', 'sheets']

SETTINGS_SCHEMA: Dict[str, Any] = {
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'interval_ms': {'type': int, 'required': True, 'minimum': 1},
            'page_size': {'type': int, 'required': True, 'minimum': 1},
            'backoff': {'type': str, 'required': True, 'allowed_values': BACKOFF_STRATEGIES},
            'backoff_base_s': {'type': float, 'required': True, 'minimum': 0},
            'backoff_max_s': {'type': float, 'required': True, 'minimum': 0},
        }
    },
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'backend': {'type': str, 'required': True, 'allowed_values': REMOTE_BACKENDS},
            'spreadsheet_id': {'type': str, 'required': True},
            'worksheet': {'type': str, 'required': True},
        }
    },
    'defaults': {
        'type': dict,
        'required': True,
        'item_schema': {
            'currency': {'type': str, 'required': True},
            'category': {'type': str, 'required': True, 'allowed_values': [c.value for c in Category]},
        }
    },
}


def _validate_section(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate a single settings section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Dict describing required fields, types, allowed values and minimums.

    Raises:
        TypeError: If the section is not a dict or a field has the wrong type.
        ValueError: If a required field is missing or a value is out of range.
    """
    logging.debug(f'Validating "{section_name}" section.')
    if not isinstance(section, dict):
        msg: str = f'"{section_name}" must be a dict.'
        logging.error(msg)
        raise TypeError(msg)

    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section:
            msg = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section:
            continue

        value = section[field]
        expected = field_specs['type']
        # JSON has no float/int distinction for whole numbers
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
            section[field] = value
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            msg = (
                f'Section "{section_name}" field "{field}" must be {expected}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)

        allowed = field_specs.get('allowed_values')
        if allowed and value not in allowed:
            msg = f'Section "{section_name}" field "{field}" must be one of {allowed}, got "{value}".'
            logging.error(msg)
            raise ValueError(msg)

        minimum = field_specs.get('minimum')
        if minimum is not None and value < minimum:
            msg = f'Section "{section_name}" field "{field}" must be >= {minimum}, got {value}.'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default settings template exists.

    The application data directory is resolved with :class:`QtCore.QStandardPaths`
    unless the ``MONTHFINANCE_DATA_DIR`` environment variable points elsewhere.
    """

    def __init__(self) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        override = os.environ.get(DATA_DIR_ENV_KEY)
        if override:
            app_data_dir = pathlib.Path(override)
        else:
            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.settings_template: pathlib.Path = self.template_dir / 'sync.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.settings_path: pathlib.Path = self.config_dir / 'sync.json'
        self.credentials_path: pathlib.Path = self.auth_dir / 'service_account.json'
        self.db_path: pathlib.Path = self.db_dir / 'state.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and prepare configuration directories and files.

        Raises:
            FileNotFoundError: If the settings template is missing.
        """
        logging.debug(f'Verifying required templates in {self.template_dir}')
        if not self.settings_template.exists():
            msg: str = f'Missing settings template: {self.settings_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        for directory in (self.config_dir, self.auth_dir, self.db_dir):
            if not directory.exists():
                logging.debug(f'Creating directory: {directory}')
                directory.mkdir(parents=True, exist_ok=True)

        if not self.settings_path.exists():
            logging.debug(f'Copying default settings from template to {self.settings_path}')
            shutil.copy(self.settings_template, self.settings_path)

    def revert_settings_to_template(self) -> None:
        """Restore sync.json from the default template file.

        Raises:
            FileNotFoundError: If the settings template file is missing.
        """
        logging.debug(f'Reverting settings to template: {self.settings_template}')
        if not self.settings_template.exists():
            msg: str = f'Settings template not found: {self.settings_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        shutil.copy(self.settings_template, self.settings_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save sync.json sections.
    """

    def __init__(self, settings_path: Optional[str] = None) -> None:
        """Initialize SettingsAPI and load the settings data.

        Args:
            settings_path: Optional path to a custom sync.json file.
        """
        super().__init__()

        self.settings_path: pathlib.Path = pathlib.Path(settings_path) if settings_path else self.settings_path

        self.data: Dict[str, Any] = {}
        for k in SETTINGS_SCHEMA.keys():
            self.data[k] = {}

        self.load_settings()

    def load_settings(self) -> Dict[str, Any]:
        """Load sync.json from disk and validate against schema.

        Returns:
            The loaded settings dictionary.

        Raises:
            status.SettingsNotFoundException: If sync.json is missing.
            status.SettingsInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.SettingsNotFoundException

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_settings(data)
            self.data = data
            return self.data
        except Exception as ex:
            raise status.SettingsInvalidException from ex

    def validate_settings(self, data: Dict[str, Any] = None) -> None:
        """Validate settings data against :data:`SETTINGS_SCHEMA`.

        Args:
            data (dict, optional): Settings data to validate. Defaults to self.data.

        Raises:
            RuntimeError: If data is empty.
            TypeError, ValueError: If a section fails validation.
        """
        if data is None:
            data = self.data
        if not data:
            raise RuntimeError('Settings data is empty.')

        for field, specs in SETTINGS_SCHEMA.items():
            if specs.get('required') and field not in data:
                msg: str = f'Missing required section: {field}'
                logging.error(msg)
                raise ValueError(msg)
            if field not in data:
                continue
            _validate_section(field, data[field], specs['item_schema'])

        logging.debug('Settings data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a settings section.

        Raises:
            KeyError: If section_name is unknown.
        """
        return self.data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a settings section.

        The previous value is restored if validation fails.

        Args:
            section_name: Section to update.
            new_data: New data dict for the section.

        Raises:
            ValueError: If section_name is unknown or the data is invalid.
            TypeError: If the data has the wrong types.
        """
        from ..signals import signals

        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.data.get(section_name, {}).copy()

        self.data[section_name] = dict(new_data)
        try:
            self.validate_settings()
            self.save_section(section_name)
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.data[section_name] = current_section_data
            raise

        signals.configSectionChanged.emit(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a settings section to its template default and save.

        Raises:
            ValueError: If section_name is invalid or not present in the template.
        """
        from ..signals import signals

        if section_name not in self.data:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        if section_name not in template_data:
            msg = f'No template-based revert logic for section "{section_name}".'
            logging.error(msg)
            raise ValueError(msg)

        self.data[section_name] = template_data[section_name]
        self.save_section(section_name)

        signals.configSectionChanged.emit(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single settings section to sync.json.

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name not in self.data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.data[section_name]

        with self.settings_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)


settings: SettingsAPI = SettingsAPI()
