from dataclasses import dataclass, field
from typing import Protocol

ACTIVE = "active"
INACTIVE = "inactive"

PUBLIC = "public"
PRIVATE = "private"


class ProviderError(RuntimeError):
    """The cloud API rejected or failed a request."""


@dataclass(frozen=True)
class Network:
    address: str
    scope: str


@dataclass(frozen=True)
class InstanceInfo:
    id: int | str
    status: str
    networks: tuple[Network, ...] = field(default_factory=tuple)

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    @property
    def public_address(self) -> str | None:
        for net in self.networks:
            if net.scope == PUBLIC:
                return net.address
        return None


@dataclass(frozen=True)
class AccountBalance:
    month_to_date_usage: str
    month_to_date_balance: str
    account_balance: str
    generated_at: str = ""


class InstanceProvider(Protocol):
    def create_instance(self) -> int | str: ...

    def get_instance(self, instance_id: int | str) -> InstanceInfo: ...

    def delete_instance(self, instance_id: int | str) -> None: ...

    def get_balance(self) -> AccountBalance: ...


def get_provider(settings) -> InstanceProvider:
    """Build the provider named by ``settings.provider``."""
    if settings.provider == "digitalocean":
        from mcdrop.providers.digitalocean import DigitalOceanProvider
        return DigitalOceanProvider.from_settings(settings)
    if settings.provider == "ec2":
        from mcdrop.providers.ec2 import EC2Provider
        return EC2Provider.from_settings(settings)
    raise ValueError(f"Unknown provider: {settings.provider}")
