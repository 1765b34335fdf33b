"""Arbiter - AI arbitrage routing and cascade execution.

Routes each query to the cheapest model likely to answer it well enough,
escalating through a cost-ordered cascade only when the cheaper output
falls short, and learns better routing from user feedback.

Example:
    # Using CLI
    arbiter ask "Summarize this article" --user alice
    arbiter stats alice

    # Using Python
    from arbiter.engine import ArbitrageEngine

    async with await ArbitrageEngine.open() as engine:
        result = await engine.submit_query("alice", "Explain CAP theorem")
"""

__version__ = "0.1.0"

__all__ = ["__version__", "main"]


def main() -> None:
    """Main entry point for the Arbiter CLI."""
    from arbiter.cli.main import app

    app()
