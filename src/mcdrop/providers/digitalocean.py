"""DigitalOcean droplet provider backed by the pydo SDK."""

from azure.core.exceptions import AzureError
from pydo import Client

from mcdrop.providers.base import (
    ACTIVE,
    INACTIVE,
    AccountBalance,
    InstanceInfo,
    Network,
    ProviderError,
)

DEFAULT_NAME = "discord-mcserver"


class DigitalOceanProvider:
    def __init__(self, token: str, size: str, region: str, image: str,
                 ssh_keys: list[str] | None = None, volume_id: str = "",
                 name: str = DEFAULT_NAME, client: Client | None = None):
        self.size = size
        self.region = region
        self.image = image
        self.ssh_keys = list(ssh_keys or [])
        self.volume_id = volume_id
        self.name = name
        self.client = client or Client(token=token)

    @classmethod
    def from_settings(cls, settings) -> "DigitalOceanProvider":
        if not settings.digitalocean_token:
            raise ValueError("DIGITALOCEAN_TOKEN is required for the digitalocean provider")
        return cls(
            token=settings.digitalocean_token,
            size=settings.digitalocean_size,
            region=settings.digitalocean_region,
            image=settings.digitalocean_image,
            ssh_keys=settings.digitalocean_ssh_keys,
            volume_id=settings.digitalocean_volume_id,
            name=settings.instance_name,
        )

    def droplet_body(self) -> dict:
        body = {
            "name": self.name,
            "image": self.image,
            "region": self.region,
            "size": self.size,
            "ssh_keys": self.ssh_keys,
            "monitoring": True,
            "backups": False,
        }
        if self.volume_id:
            body["volumes"] = [self.volume_id]
        return body

    def create_instance(self) -> int:
        try:
            resp = self.client.droplets.create(body=self.droplet_body())
        except AzureError as e:
            raise ProviderError(f"Could not create droplet: {e}") from e
        return resp["droplet"]["id"]

    def get_instance(self, instance_id: int) -> InstanceInfo:
        try:
            resp = self.client.droplets.get(droplet_id=instance_id)
        except AzureError as e:
            raise ProviderError(f"Could not fetch droplet {instance_id}: {e}") from e
        droplet = resp["droplet"]
        networks = tuple(
            Network(address=net["ip_address"], scope=net.get("type", ""))
            for net in droplet.get("networks", {}).get("v4", [])
        )
        status = ACTIVE if droplet.get("status") == "active" else INACTIVE
        return InstanceInfo(id=droplet["id"], status=status, networks=networks)

    def delete_instance(self, instance_id: int) -> None:
        try:
            self.client.droplets.destroy(droplet_id=instance_id)
        except AzureError as e:
            raise ProviderError(f"Could not delete droplet {instance_id}: {e}") from e

    def get_balance(self) -> AccountBalance:
        try:
            resp = self.client.balance.get()
        except AzureError as e:
            raise ProviderError(f"Could not fetch account balance: {e}") from e
        return AccountBalance(
            month_to_date_usage=resp.get("month_to_date_usage", ""),
            month_to_date_balance=resp.get("month_to_date_balance", ""),
            account_balance=resp.get("account_balance", ""),
            generated_at=resp.get("generated_at", ""),
        )
