from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values

from panel.environment import EnvironmentSetup, SetupOptions, generate_salt


class ScriptedPrompter:
    """Answer prompts from a mapping keyed by the question text."""

    def __init__(self, answers: Optional[Dict[str, object]] = None) -> None:
        self.answers = answers or {}
        self.asked: List[str] = []

    def _answer(self, question: str, default):
        self.asked.append(question)
        return self.answers.get(question, default)

    def ask(self, question: str, default: Optional[str] = None) -> str:
        return self._answer(question, default) or ""

    def secret(self, question: str) -> str:
        return self._answer(question, "") or ""

    def confirm(self, question: str, default: bool = False) -> bool:
        return bool(self._answer(question, default))

    def choice(self, question: str, options: Mapping[str, str], default: Optional[str] = None) -> str:
        return self._answer(question, default or next(iter(options)))


def _run(tmp_path, options: SetupOptions, *, current=None, answers=None):
    output: List[str] = []
    env_path = tmp_path / ".env"
    prompter = ScriptedPrompter(answers)
    setup = EnvironmentSetup(env_path, current=current or {}, prompter=prompter, output=output.append)
    code = setup.run(options)
    return code, env_path, output, prompter


def test_generate_salt_is_twenty_characters() -> None:
    salt = generate_salt()
    assert len(salt) == 20
    assert salt.isalnum()


def test_non_interactive_setup_writes_env_file(tmp_path) -> None:
    options = SetupOptions(
        author="eggs@example.com",
        url="https://panel.example.com",
        timezone="Europe/London",
        cache="file",
        session="database",
        queue="sync",
        settings_ui="true",
    )

    code, env_path, _, prompter = _run(tmp_path, options)

    assert code == 0
    assert prompter.asked == []
    values = dotenv_values(env_path)
    assert values["APP_SERVICE_AUTHOR"] == "eggs@example.com"
    assert values["APP_URL"] == "https://panel.example.com"
    assert values["APP_TIMEZONE"] == "Europe/London"
    assert values["CACHE_DRIVER"] == "file"
    assert values["SESSION_DRIVER"] == "database"
    assert values["QUEUE_CONNECTION"] == "sync"
    assert values["APP_ENVIRONMENT_ONLY"] == "false"
    assert values["SESSION_SECURE_COOKIE"] == "true"
    assert len(values["HASHIDS_SALT"]) == 20
    assert "REDIS_HOST" not in values


def test_existing_salt_is_kept_unless_requested(tmp_path) -> None:
    options = SetupOptions(
        author="eggs@example.com",
        url="http://panel.local",
        timezone="UTC",
        cache="file",
        session="file",
        queue="sync",
        settings_ui="false",
    )
    current = {"HASHIDS_SALT": "existing-salt-value"}

    _, env_path, _, _ = _run(tmp_path, options, current=current)
    values = dotenv_values(env_path)
    assert "HASHIDS_SALT" not in values
    assert "SESSION_SECURE_COOKIE" not in values
    assert values["APP_ENVIRONMENT_ONLY"] == "true"

    options.new_salt = True
    _, env_path, _, _ = _run(tmp_path, options, current=current)
    assert len(dotenv_values(env_path)["HASHIDS_SALT"]) == 20


def test_invalid_author_email_exits_with_error(tmp_path) -> None:
    code, env_path, output, _ = _run(tmp_path, SetupOptions(author="not-an-email"))

    assert code == 1
    assert "The service author email provided is invalid." in output
    assert not env_path.exists()


def test_unknown_timezone_is_rejected(tmp_path) -> None:
    code, _, _, _ = _run(tmp_path, SetupOptions(author="eggs@example.com", url="http://x", timezone="Mars/Olympus"))

    assert code == 1


def test_interactive_redis_prompts_store_null_password(tmp_path) -> None:
    answers = {
        "Egg Author Email": "eggs@example.com",
        "Application URL": "http://panel.local",
        "Application Timezone": "UTC",
        "Cache Driver": "redis",
        "Session Driver": "file",
        "Queue Driver": "sync",
        "Enable UI based settings editor?": True,
        "Redis Host": "10.0.0.5",
        "Redis Password": "",
    }

    code, env_path, _, prompter = _run(tmp_path, SetupOptions(), answers=answers)

    assert code == 0
    values = dotenv_values(env_path)
    assert values["REDIS_HOST"] == "10.0.0.5"
    assert values["REDIS_PASSWORD"] == "null"
    assert values["REDIS_PORT"] == "6379"
    assert "Redis Password" in prompter.asked


def test_existing_redis_password_is_kept_when_declined(tmp_path) -> None:
    options = SetupOptions(
        author="eggs@example.com",
        url="http://panel.local",
        timezone="UTC",
        cache="redis",
        session="redis",
        queue="redis",
        settings_ui="true",
        redis_host="127.0.0.1",
        redis_port="6380",
    )
    answers = {"It seems a password is already defined for Redis, would you like to change it?": False}

    code, env_path, _, prompter = _run(
        tmp_path, options, current={"REDIS_PASSWORD": "s3cret"}, answers=answers
    )

    assert code == 0
    assert "Redis Password" not in prompter.asked
    values = dotenv_values(env_path)
    assert values["REDIS_PASSWORD"] == "s3cret"
    assert values["REDIS_PORT"] == "6380"


def test_invalid_driver_option_is_rejected(tmp_path) -> None:
    options = SetupOptions(author="eggs@example.com", url="http://x", timezone="UTC", cache="mongo")

    code, _, output, _ = _run(tmp_path, options)

    assert code == 1
    assert any("not a valid cache driver" in line for line in output)


def test_existing_env_values_are_replaced_in_place(tmp_path) -> None:
    env_path = tmp_path / ".env"
    env_path.write_text("APP_KEY=keep-me\nAPP_URL=http://old.example.com\n", encoding="utf-8")
    options = SetupOptions(
        author="eggs@example.com",
        url="http://new.example.com",
        timezone="UTC",
        cache="file",
        session="file",
        queue="sync",
        settings_ui="true",
    )

    EnvironmentSetup(env_path, current={}, prompter=ScriptedPrompter(), output=lambda _: None).run(options)

    values = dotenv_values(env_path)
    assert values["APP_KEY"] == "keep-me"
    assert values["APP_URL"] == "http://new.example.com"
