"""Manages loading, updating, and validating the application's configuration.

This module is responsible for handling the `config.ini` file. It includes
functionality to:
- Create a new configuration file from a template if one doesn't exist.
- Update an existing configuration file with new options from the template
  while preserving user-defined values.
- Load the configuration into a `ConfigParser` object for use by the application.
- Validate the configuration to ensure all required sections and options are
  present and have valid values.
- Build the runtime objects (transport, offline queue, upload session) from a
  validated configuration.
"""
import configparser
from pathlib import Path
import shutil
import logging
import sys
import configupdater
import time
from typing import List, Optional, Union

from .clients import Transport, get_transport
from .core_logic.resilient_queue import (
    DEFAULT_MAX_QUEUE_SIZE, DEFAULT_MAX_RETRIES, DEFAULT_STORAGE_KEY, MutationQueue
)
from .core_logic.storage import DurableStore, JsonFileStore, MemoryStore
from .core_logic.transfer_manager import ChunkedOptions, RetryOptions, UploadOptions, UploadSession


def _merge_section(template_section: configupdater.Section, user_section: configupdater.Section) -> List[str]:
    """Copies options missing from `user_section`, with the comments written above them.

    Returns:
        The keys that were added.
    """
    added: List[str] = []
    comment_lines: List[str] = []
    for block in template_section.iter_blocks():
        if isinstance(block, configupdater.Comment):
            comment_lines.extend(block.lines)
            continue
        if not isinstance(block, configupdater.Option):
            comment_lines = []
            continue
        if not user_section.has_option(block.key):
            user_section.set(block.key, block.value)
            new_option = user_section[block.key]
            for line in comment_lines:
                new_option.add_before.comment(line)
            added.append(block.key)
        comment_lines = []
    return added


def update_config(config_path: str, template_path: str) -> None:
    """Brings `config_path` up to date with the packaged template.

    A missing config is created as a copy of the template. Otherwise, sections
    and options the user's file lacks are appended (with their template
    comments), user values and comments are left untouched, and the previous
    file is kept under `backup/` next to it.

    Raises:
        SystemExit: If the template is missing or the config cannot be written.
    """
    config_file = Path(config_path)
    template_file = Path(template_path)
    logging.info("STATE: Checking the configuration against the template...")

    if not template_file.is_file():
        logging.error(f"FATAL: Config template '{template_path}' not found.")
        sys.exit(1)

    if not config_file.is_file():
        logging.warning(f"No configuration at '{config_path}', creating one from the template.")
        try:
            shutil.copy2(template_file, config_file)
        except OSError as e:
            logging.error(f"FATAL: Could not create config file: {e}")
            sys.exit(1)
        return

    try:
        updater = configupdater.ConfigUpdater()
        updater.read(config_file, encoding='utf-8')
        template = configupdater.ConfigUpdater()
        template.read(template_file, encoding='utf-8')

        changes = 0
        for section_name in template.sections():
            if not updater.has_section(section_name):
                updater.add_section(section_name)
                logging.info(f"CONFIG: Added section [{section_name}]")
                changes += 1
            for key in _merge_section(template[section_name], updater[section_name]):
                logging.info(f"CONFIG: Added option '{key}' to [{section_name}]")
                changes += 1

        if not changes:
            logging.info("CONFIG: Configuration is up to date.")
            return

        backup_dir = config_file.parent / 'backup'
        backup_dir.mkdir(exist_ok=True)
        backup_path = backup_dir / f"{config_file.stem}.bak_{time.strftime('%Y%m%d-%H%M%S')}"
        shutil.copy2(config_file, backup_path)
        with config_file.open('w', encoding='utf-8') as f:
            updater.write(f)
        logging.info(f"CONFIG: Wrote {changes} template additions; previous file saved as '{backup_path}'")
    except (OSError, configparser.Error) as e:
        logging.error(f"FATAL: Could not update '{config_path}': {e}", exc_info=True)
        sys.exit(1)


def load_config(config_path: str = "config.ini") -> configparser.ConfigParser:
    """Reads `config_path` into a `ConfigParser`, exiting if the file is missing."""
    config_file = Path(config_path)
    if not config_file.is_file():
        logging.error(f"FATAL: Configuration file not found at '{config_path}'.")
        logging.error("Run any sub-command once to create it from the template, then fill it in.")
        sys.exit(1)
    config = configparser.ConfigParser()
    config.read(config_file, encoding='utf-8')
    return config


class ConfigValidator:
    """Validates the structure and values of the application's configuration.

    Attributes:
        config (configparser.ConfigParser): The configuration object to validate.
        errors (List[str]): Critical problems. If this list is not empty after
            validation, the configuration is considered invalid.
        warnings (List[str]): Non-critical problems that do not invalidate the
            configuration.
    """

    REQUIRED_SECTIONS = {
        'TRANSPORT': ['base_url'],
        'OFFLINE': [],
        'UPLOAD': ['endpoint'],
    }

    VALID_TRANSPORT_TYPES = ['httpx']

    # (section, option) -> (min, max) recommended range
    NUMERIC_OPTIONS = {
        ('TRANSPORT', 'timeout'): (1, 600),
        ('OFFLINE', 'max_queue_size'): (1, 10000),
        ('OFFLINE', 'max_retries'): (0, 100),
        ('UPLOAD', 'chunk_size'): (64 * 1024, 512 * 1024 * 1024),
        ('UPLOAD', 'retry_attempts'): (0, 20),
        ('UPLOAD', 'retry_delay'): (0, 300),
        ('UPLOAD', 'timeout'): (1, 3600),
    }

    BOOLEAN_OPTIONS = [('OFFLINE', 'enabled'), ('UPLOAD', 'chunked')]

    def __init__(self, config: configparser.ConfigParser):
        self.config = config
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self) -> bool:
        """Runs all validation checks and prints resulting errors or warnings.

        Returns:
            `True` if the configuration is valid (no errors), `False` otherwise.
        """
        self._check_required_sections()
        self._check_required_options()
        self._check_transport()
        self._check_numeric_values()
        self._check_boolean_values()
        self._check_store_path()

        if self.errors:
            print("Configuration errors found:", file=sys.stderr)
            for error in self.errors:
                print(f" ❌ {error}", file=sys.stderr)
            return False

        if self.warnings:
            print("Configuration warnings:", file=sys.stderr)
            for warning in self.warnings:
                print(f" ⚠️ {warning}", file=sys.stderr)

        return True

    def _check_required_sections(self) -> None:
        for section in self.REQUIRED_SECTIONS:
            if not self.config.has_section(section):
                self.errors.append(f"Missing required section: [{section}]")

    def _check_required_options(self) -> None:
        for section, options in self.REQUIRED_SECTIONS.items():
            if not self.config.has_section(section):
                continue
            for option in options:
                if not self.config.has_option(section, option):
                    self.errors.append(f"Missing option '{option}' in [{section}]")
                elif not self.config.get(section, option).strip():
                    self.errors.append(f"Option '{option}' in [{section}] is empty")

    def _check_transport(self) -> None:
        """Validates the transport type and the shape of the base URL."""
        if not self.config.has_section('TRANSPORT'):
            return

        transport_type = self.config.get('TRANSPORT', 'type', fallback='httpx').strip().lower()
        if transport_type not in self.VALID_TRANSPORT_TYPES:
            self.errors.append(
                f"Invalid transport type '{transport_type}'. Must be one of: {', '.join(self.VALID_TRANSPORT_TYPES)}"
            )

        base_url = self.config.get('TRANSPORT', 'base_url', fallback='').strip()
        if base_url and not base_url.startswith(('http://', 'https://')):
            self.errors.append(f"base_url '{base_url}' must start with http:// or https://")
        elif base_url.startswith('http://'):
            self.warnings.append(f"base_url '{base_url}' is not using HTTPS")

    def _check_numeric_values(self) -> None:
        """Validates that numeric options parse and lie within a recommended range."""
        for (section, option), (min_val, max_val) in self.NUMERIC_OPTIONS.items():
            if not self.config.has_option(section, option):
                continue
            try:
                value = self.config.getfloat(section, option)
            except ValueError:
                self.errors.append(f"Option '{option}' in [{section}] must be a number")
                continue
            if option == 'chunk_size' and value <= 0:
                self.errors.append(f"chunk_size must be greater than 0 (got {value:g})")
            elif value < 0:
                self.errors.append(f"Option '{option}' in [{section}] must not be negative")
            elif not (min_val <= value <= max_val):
                self.warnings.append(
                    f"{option}={value:g} in [{section}] is outside recommended range [{min_val}-{max_val}]"
                )

    def _check_boolean_values(self) -> None:
        for section, option in self.BOOLEAN_OPTIONS:
            if self.config.has_option(section, option):
                try:
                    self.config.getboolean(section, option)
                except ValueError:
                    self.errors.append(f"Option '{option}' in [{section}] must be a boolean (true/false)")

    def _check_store_path(self) -> None:
        if not self.config.has_section('OFFLINE'):
            return
        store_path = self.config.get('OFFLINE', 'store_path', fallback='').strip()
        if not store_path:
            self.warnings.append("No store_path in [OFFLINE]; queued requests will not survive a restart")
        elif not Path(store_path).expanduser().parent.exists():
            self.warnings.append(f"Directory for store_path '{store_path}' does not exist yet")


def build_transport(config: configparser.ConfigParser) -> Transport:
    return get_transport(config['TRANSPORT'])


def build_store(config: configparser.ConfigParser, base_dir: Optional[Union[str, Path]] = None) -> DurableStore:
    """Returns the store configured in [OFFLINE], relative paths resolved against `base_dir`."""
    store_path = config.get('OFFLINE', 'store_path', fallback='').strip()
    if not store_path:
        return MemoryStore()
    path = Path(store_path).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = Path(base_dir) / path
    return JsonFileStore(path)


def build_mutation_queue(config: configparser.ConfigParser, store: Optional[DurableStore] = None) -> MutationQueue:
    return MutationQueue(
        store=store,
        storage_key=config.get('OFFLINE', 'storage_key', fallback=DEFAULT_STORAGE_KEY),
        max_queue_size=config.getint('OFFLINE', 'max_queue_size', fallback=DEFAULT_MAX_QUEUE_SIZE),
        max_retries=config.getint('OFFLINE', 'max_retries', fallback=DEFAULT_MAX_RETRIES),
        enabled=config.getboolean('OFFLINE', 'enabled', fallback=True),
    )


def build_upload_options(config: configparser.ConfigParser) -> UploadOptions:
    timeout = config.getfloat('UPLOAD', 'timeout', fallback=0.0)
    return UploadOptions(
        endpoint=config.get('UPLOAD', 'endpoint', fallback='/upload'),
        chunked=ChunkedOptions(
            enabled=config.getboolean('UPLOAD', 'chunked', fallback=False),
            chunk_size=config.getint('UPLOAD', 'chunk_size', fallback=1024 * 1024),
        ),
        retry=RetryOptions(
            attempts=config.getint('UPLOAD', 'retry_attempts', fallback=0),
            delay=config.getfloat('UPLOAD', 'retry_delay', fallback=1.0),
        ),
        timeout=timeout or None,
    )


def build_upload_session(config: configparser.ConfigParser, transport: Transport) -> UploadSession:
    timeout = config.getfloat('UPLOAD', 'timeout', fallback=0.0)
    return UploadSession(
        transport,
        endpoint=config.get('UPLOAD', 'endpoint', fallback='/upload'),
        default_timeout=timeout or None,
    )
