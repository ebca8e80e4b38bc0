"""Interactive configuration of the panel's ``.env`` file."""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from getpass import getpass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Protocol
from zoneinfo import available_timezones

from dotenv import set_key
from pydantic import EmailStr, TypeAdapter, ValidationError

logger = logging.getLogger("panel.environment")

CACHE_DRIVERS: Dict[str, str] = {
    "redis": "Redis (recommended)",
    "memcached": "Memcached",
    "file": "Filesystem",
}

SESSION_DRIVERS: Dict[str, str] = {
    "redis": "Redis (recommended)",
    "memcached": "Memcached",
    "database": "SQL Database",
    "file": "Filesystem",
    "cookie": "Cookie",
}

QUEUE_DRIVERS: Dict[str, str] = {
    "redis": "Redis (recommended)",
    "database": "SQL Database",
    "sync": "Sync",
}

_DRIVER_VARIABLES = ("CACHE_DRIVER", "SESSION_DRIVER", "QUEUE_CONNECTION")
_SALT_ALPHABET = string.ascii_letters + string.digits
_email_adapter = TypeAdapter(EmailStr)


class Prompter(Protocol):
    def ask(self, question: str, default: Optional[str] = None) -> str: ...

    def secret(self, question: str) -> str: ...

    def confirm(self, question: str, default: bool = False) -> bool: ...

    def choice(self, question: str, options: Mapping[str, str], default: Optional[str] = None) -> str: ...


class ConsolePrompter:
    """Prompt on the terminal using ``input`` and ``getpass``."""

    def ask(self, question: str, default: Optional[str] = None) -> str:
        suffix = f" [{default}]" if default else ""
        answer = input(f"{question}{suffix}: ").strip()
        return answer or (default or "")

    def secret(self, question: str) -> str:
        return getpass(f"{question}: ")

    def confirm(self, question: str, default: bool = False) -> bool:
        hint = "Y/n" if default else "y/N"
        answer = input(f"{question} ({hint}): ").strip().lower()
        if not answer:
            return default
        return answer in {"y", "yes"}

    def choice(self, question: str, options: Mapping[str, str], default: Optional[str] = None) -> str:
        print(question)
        for key, label in options.items():
            print(f"  [{key}] {label}")
        while True:
            answer = self.ask("Select an option", default)
            if answer in options:
                return answer
            print(f"'{answer}' is not a valid option.")


def generate_salt(length: int = 20) -> str:
    return "".join(secrets.choice(_SALT_ALPHABET) for _ in range(length))


def write_environment(path: Path, variables: Mapping[str, str]) -> None:
    """Persist variables to a dotenv file, replacing existing keys in place."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    for key, value in variables.items():
        set_key(str(path), key, value, quote_mode="auto")


@dataclass
class SetupOptions:
    new_salt: bool = False
    author: Optional[str] = None
    url: Optional[str] = None
    timezone: Optional[str] = None
    cache: Optional[str] = None
    session: Optional[str] = None
    queue: Optional[str] = None
    redis_host: Optional[str] = None
    redis_pass: Optional[str] = None
    redis_port: Optional[str] = None
    settings_ui: Optional[str] = None


class EnvironmentSetup:
    """Collect the basic environment settings for the panel and write them out."""

    def __init__(
        self,
        env_path: Path,
        *,
        current: Mapping[str, str],
        prompter: Optional[Prompter] = None,
        output: Callable[[str], None] = print,
    ) -> None:
        self._env_path = env_path
        self._current = current
        self._prompter = prompter or ConsolePrompter()
        self._output = output
        self.variables: Dict[str, str] = {}

    def run(self, options: SetupOptions) -> int:
        if not self._current.get("HASHIDS_SALT") or options.new_salt:
            self.variables["HASHIDS_SALT"] = generate_salt()

        self._output("Provide the email address that eggs exported by this panel should be linked to.")
        author = options.author or self._prompter.ask(
            "Egg Author Email",
            self._current.get("APP_SERVICE_AUTHOR", "unknown@unknown.com"),
        )
        try:
            _email_adapter.validate_python(author)
        except ValidationError:
            self._output("The service author email provided is invalid.")
            return 1
        self.variables["APP_SERVICE_AUTHOR"] = author

        self._output(
            "The application URL MUST begin with https:// or http:// depending on whether you are using SSL."
        )
        self.variables["APP_URL"] = options.url or self._prompter.ask(
            "Application URL",
            self._current.get("APP_URL", "https://example.com"),
        )

        timezone = options.timezone or self._prompter.ask(
            "Application Timezone",
            self._current.get("APP_TIMEZONE", "UTC"),
        )
        if timezone not in available_timezones():
            self._output(f"'{timezone}' is not a recognised IANA timezone.")
            return 1
        self.variables["APP_TIMEZONE"] = timezone

        for variable, label, drivers, option in (
            ("CACHE_DRIVER", "Cache Driver", CACHE_DRIVERS, options.cache),
            ("SESSION_DRIVER", "Session Driver", SESSION_DRIVERS, options.session),
            ("QUEUE_CONNECTION", "Queue Driver", QUEUE_DRIVERS, options.queue),
        ):
            selected = self._select_driver(label, drivers, option, self._current.get(variable, "redis"))
            if selected is None:
                return 1
            self.variables[variable] = selected

        if options.settings_ui is not None:
            self.variables["APP_ENVIRONMENT_ONLY"] = "false" if options.settings_ui == "true" else "true"
        else:
            enabled = self._prompter.confirm("Enable UI based settings editor?", True)
            self.variables["APP_ENVIRONMENT_ONLY"] = "false" if enabled else "true"

        if self.variables["APP_URL"].startswith("https://"):
            self.variables["SESSION_SECURE_COOKIE"] = "true"

        self._check_for_redis(options)
        write_environment(self._env_path, self.variables)
        logger.info("Wrote %s environment variable(s) to %s", len(self.variables), self._env_path)
        return 0

    def _select_driver(
        self,
        label: str,
        drivers: Mapping[str, str],
        option: Optional[str],
        configured: str,
    ) -> Optional[str]:
        if option is not None:
            if option not in drivers:
                self._output(f"'{option}' is not a valid {label.lower()}. Choose one of: {', '.join(drivers)}.")
                return None
            return option
        default = configured if configured in drivers else None
        return self._prompter.choice(label, drivers, default)

    def _check_for_redis(self, options: SetupOptions) -> None:
        if not any(self.variables.get(name) == "redis" for name in _DRIVER_VARIABLES):
            return

        self._output(
            "You've selected the Redis driver for one or more options, please provide valid connection "
            "information below."
        )
        self.variables["REDIS_HOST"] = options.redis_host or self._prompter.ask(
            "Redis Host",
            self._current.get("REDIS_HOST", "127.0.0.1"),
        )

        ask_for_password = True
        existing_password = self._current.get("REDIS_PASSWORD")
        if existing_password and existing_password != "null":
            self.variables["REDIS_PASSWORD"] = existing_password
            ask_for_password = options.redis_pass is not None or self._prompter.confirm(
                "It seems a password is already defined for Redis, would you like to change it?"
            )

        if ask_for_password:
            self._output(
                "By default a Redis server instance has no password as it is running locally and "
                "inaccessible to the outside world. If this is the case, simply hit enter without entering a value."
            )
            if options.redis_pass is not None:
                self.variables["REDIS_PASSWORD"] = options.redis_pass
            else:
                self.variables["REDIS_PASSWORD"] = self._prompter.secret("Redis Password")

        if not self.variables.get("REDIS_PASSWORD"):
            self.variables["REDIS_PASSWORD"] = "null"

        self.variables["REDIS_PORT"] = options.redis_port or self._prompter.ask(
            "Redis Port",
            self._current.get("REDIS_PORT", "6379"),
        )


__all__ = [
    "CACHE_DRIVERS",
    "ConsolePrompter",
    "EnvironmentSetup",
    "QUEUE_DRIVERS",
    "SESSION_DRIVERS",
    "SetupOptions",
    "generate_salt",
    "write_environment",
]
