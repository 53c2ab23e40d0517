"""Console output for the device authorization flow.

Renders to stderr so stdio-based protocol transports keep stdout clean.
"""

from typing import Protocol

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from oauthgate.auth.models import DeviceAuthorization


class DevicePresenter(Protocol):
    """Output sink for device flow progress."""

    def show_instructions(self, authorization: DeviceAuthorization) -> None: ...

    def show_polling(self, attempt: int, interval: int) -> None: ...

    def show_success(self) -> None: ...

    def show_error(self, message: str) -> None: ...

    def show_warning(self, message: str) -> None: ...


class ConsolePresenter:
    """Rich console rendering of device flow instructions."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console(stderr=True)

    def show_instructions(self, authorization: DeviceAuthorization) -> None:
        expiry_minutes = authorization.expires_in // 60

        body = Text()
        body.append("Please complete authentication in your browser:\n\n")
        body.append("Visit: ", style="dim")
        body.append(f"{authorization.verification_uri}\n", style="bold cyan")
        body.append("Code:  ", style="dim")
        body.append(f"{authorization.user_code}\n", style="bold green")
        if authorization.verification_uri_complete:
            body.append("\nOr use this direct link:\n", style="dim")
            body.append(f"{authorization.verification_uri_complete}\n", style="cyan")
        body.append(f"\nCode expires in {expiry_minutes} minutes\n", style="yellow")
        body.append("Waiting for authorization...", style="dim")

        self.console.print(Panel(body, title="Server Authentication", expand=False))

    def show_polling(self, attempt: int, interval: int) -> None:
        self.console.print(
            f"[dim]Checking authorization (attempt {attempt}, interval {interval}s)[/dim]"
        )

    def show_success(self) -> None:
        self.console.print("[green]Authentication successful.[/green]")

    def show_error(self, message: str) -> None:
        self.console.print(f"[red]Authentication failed:[/red] {message}")

    def show_warning(self, message: str) -> None:
        self.console.print(f"[yellow]{message}[/yellow]")


class SilentPresenter:
    """Presenter that discards all output."""

    def show_instructions(self, authorization: DeviceAuthorization) -> None:
        pass

    def show_polling(self, attempt: int, interval: int) -> None:
        pass

    def show_success(self) -> None:
        pass

    def show_error(self, message: str) -> None:
        pass

    def show_warning(self, message: str) -> None:
        pass
