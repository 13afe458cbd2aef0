"""Console and colors shared by the CLI."""

from rich.console import Console

CYAN = "#00d4e5"
VIOLET = "#b44dff"
GREEN = "#34d399"

console = Console()
