from mcdrop.control.ssh import RemoteExecutor

DEFAULT_RELAY = "/mnt/discord_mcserver/minecraft/mcrcon"
DEFAULT_PASSWORD = "localrcon"

# mcrcon terminates colored responses with a reset sequence
COLOR_RESET = "\x1b[0m"


def _single_quote(text: str) -> str:
    return "'" + text.replace("'", "'\\''") + "'"


class ConsoleBridge:
    """Sends game-console commands through the relay binary on the instance."""

    def __init__(self, executor: RemoteExecutor, relay_path: str = DEFAULT_RELAY,
                 password: str = DEFAULT_PASSWORD):
        self.executor = executor
        self.relay_path = relay_path
        self.password = password

    def build_command(self, text: str) -> str:
        return f"{self.relay_path} -p {_single_quote(self.password)} {_single_quote(text)}"

    def send(self, text: str) -> str:
        result = self.executor.exec(self.build_command(text))
        return result.stdout.replace(COLOR_RESET, "")
