import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from mcdrop.control.console import DEFAULT_PASSWORD, DEFAULT_RELAY
from mcdrop.control.ssh import DEFAULT_KEY_PATH, KEY_NAME
from mcdrop.control.state import LifecycleState

PROVIDERS = ("digitalocean", "ec2")


@dataclass
class Settings:
    provider: str = "digitalocean"
    instance_name: str = "discord-mcserver"

    digitalocean_token: str = ""
    digitalocean_size: str = "s-2vcpu-4gb"
    digitalocean_region: str = "fra1"
    digitalocean_image: str = "ubuntu-20-04-x64"
    digitalocean_ssh_keys: list[str] = field(default_factory=list)
    digitalocean_volume_id: str = ""

    aws_region: str = "us-east-1"
    ec2_ami_id: str = ""
    ec2_instance_type: str = "t3.medium"
    ec2_key_name: str = KEY_NAME
    ec2_security_group_id: str = ""
    ec2_subnet_id: str = ""

    ssh_key_path: Path = DEFAULT_KEY_PATH
    ssh_username: str = "root"

    console_relay: str = DEFAULT_RELAY
    console_password: str = DEFAULT_PASSWORD

    poll_interval: float = 5.0
    poll_max_attempts: int | None = None
    poll_deadline: float | None = None
    ssh_settle_delay: float = 30.0
    save_settle_delay: float = 10.0
    stop_settle_delay: float = 10.0
    poweroff_settle_delay: float = 60.0

    initial_state: LifecycleState | None = None
    initial_instance_id: int | str | None = None

    api_host: str = "127.0.0.1"
    api_port: int = 8080


def _get(env, key: str, default: str = "") -> str:
    return env.get(key, default).strip()


def _number(env, key: str, cast, default):
    raw = _get(env, key)
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def _instance_id(raw: str) -> int | str | None:
    # DigitalOcean droplet ids are integers, EC2 ids are strings
    if not raw:
        return None
    return int(raw) if raw.isdigit() else raw


def settings_from_env(env) -> Settings:
    provider = _get(env, "MCDROP_PROVIDER", "digitalocean").lower()
    if provider not in PROVIDERS:
        raise ValueError(f"MCDROP_PROVIDER must be one of {', '.join(PROVIDERS)}, got {provider!r}")

    initial_state = None
    raw_state = _get(env, "MCDROP_INITIAL_STATE").lower()
    if raw_state:
        try:
            initial_state = LifecycleState(raw_state)
        except ValueError:
            valid = ", ".join(s.value for s in LifecycleState)
            raise ValueError(f"MCDROP_INITIAL_STATE must be one of {valid}, got {raw_state!r}") from None

    defaults = Settings()
    ssh_keys = [k.strip() for k in _get(env, "DIGITALOCEAN_SSH_KEYS").split(",") if k.strip()]
    key_path = _get(env, "SSH_PRIVATEKEY")

    return Settings(
        provider=provider,
        instance_name=_get(env, "MCDROP_INSTANCE_NAME", defaults.instance_name),
        digitalocean_token=_get(env, "DIGITALOCEAN_TOKEN"),
        digitalocean_size=_get(env, "DIGITALOCEAN_SIZE", defaults.digitalocean_size),
        digitalocean_region=_get(env, "DIGITALOCEAN_REGION", defaults.digitalocean_region),
        digitalocean_image=_get(env, "DIGITALOCEAN_IMAGE", defaults.digitalocean_image),
        digitalocean_ssh_keys=ssh_keys,
        digitalocean_volume_id=_get(env, "DIGITALOCEAN_BLOCK_STORAGE"),
        aws_region=_get(env, "AWS_REGION", defaults.aws_region),
        ec2_ami_id=_get(env, "MCDROP_EC2_AMI"),
        ec2_instance_type=_get(env, "MCDROP_EC2_INSTANCE_TYPE", defaults.ec2_instance_type),
        ec2_key_name=_get(env, "MCDROP_EC2_KEY_NAME", defaults.ec2_key_name),
        ec2_security_group_id=_get(env, "MCDROP_EC2_SECURITY_GROUP"),
        ec2_subnet_id=_get(env, "MCDROP_EC2_SUBNET"),
        ssh_key_path=Path(key_path).expanduser() if key_path else defaults.ssh_key_path,
        ssh_username=_get(env, "MCDROP_SSH_USER", defaults.ssh_username),
        console_relay=_get(env, "MCDROP_CONSOLE_RELAY", defaults.console_relay),
        console_password=_get(env, "MCDROP_CONSOLE_PASSWORD", defaults.console_password),
        poll_interval=_number(env, "MCDROP_POLL_INTERVAL", float, defaults.poll_interval),
        poll_max_attempts=_number(env, "MCDROP_POLL_MAX_ATTEMPTS", int, None),
        poll_deadline=_number(env, "MCDROP_POLL_DEADLINE", float, None),
        ssh_settle_delay=_number(env, "MCDROP_SSH_SETTLE", float, defaults.ssh_settle_delay),
        save_settle_delay=_number(env, "MCDROP_SAVE_SETTLE", float, defaults.save_settle_delay),
        stop_settle_delay=_number(env, "MCDROP_STOP_SETTLE", float, defaults.stop_settle_delay),
        poweroff_settle_delay=_number(env, "MCDROP_POWEROFF_SETTLE", float, defaults.poweroff_settle_delay),
        initial_state=initial_state,
        initial_instance_id=_instance_id(_get(env, "MCDROP_INSTANCE_ID")),
        api_host=_get(env, "MCDROP_API_HOST", defaults.api_host),
        api_port=_number(env, "MCDROP_API_PORT", int, defaults.api_port),
    )


def load_settings(env_file: str | None = None) -> Settings:
    """Load a .env file (if any) into the environment and build Settings from it."""
    load_dotenv(env_file or find_dotenv(usecwd=True))
    return settings_from_env(os.environ)
