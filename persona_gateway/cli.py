"""CLI entry point for the persona-gateway package."""

from __future__ import annotations

import os
import sys

ANTHROPIC_KEYS_URL = "https://console.anthropic.com/settings/keys"
OPENROUTER_KEYS_URL = "https://openrouter.ai/keys"


def _print_setup_banner(
    provider: str,
    assistants: int,
    port: int,
    *,
    for_startup: bool = True,
) -> None:
    """Print provider setup instructions. If for_startup, show the 'gateway started' line instead of the header."""
    provider_note = "no API key required" if provider == "stub" else "API key from .env"
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("Persona gateway started: {} assistants".format(assistants))
    else:
        print("Persona Gateway Setup")
    print("Provider: {} ({})".format(provider, provider_note))
    print()
    print("Docs:       {}/docs".format(base))
    print("Assistants: {}/assistants".format(base))
    print("Health:     {}/health".format(base))
    print()
    print("────────────────────────────────────────────")
    print("The stub provider echoes your message. For real answers, add one of these to .env:")
    print()
    print("   PROVIDER=anthropic")
    print("   ANTHROPIC_API_KEY=YOUR_KEY_HERE        ({})".format(ANTHROPIC_KEYS_URL))
    print()
    print("   PROVIDER=openrouter")
    print("   OPENROUTER_API_KEY=YOUR_KEY_HERE       ({})".format(OPENROUTER_KEYS_URL))
    print("   OPENROUTER_MODEL=anthropic/claude-sonnet-4")
    print()
    print("Optional: SESSION_IDLE_TTL_SECONDS=3600 prunes idle sessions.")
    print()


def _print_help() -> None:
    print("Persona Gateway CLI")
    print()
    print("Usage:")
    print("  persona-gateway             Start the gateway server")
    print("  persona-gateway setup       Print setup/env guidance")
    print()


def main() -> None:
    """Run the gateway or handle help/setup commands."""
    from .config import get_settings
    from .persona_loader import load_personas

    settings = get_settings()
    port = int(os.environ.get("PORT", settings.http_port))
    host = os.environ.get("HOST", "0.0.0.0")

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(
                provider=settings.provider_name,
                assistants=len(load_personas()),
                port=port,
                for_startup=False,
            )
            sys.exit(0)
        print(f"Unknown command: {subcommand}", file=sys.stderr)
        _print_help()
        sys.exit(2)

    import uvicorn

    _print_setup_banner(
        provider=settings.provider_name,
        assistants=len(load_personas()),
        port=port,
        for_startup=True,
    )

    uvicorn.run(
        "persona_gateway.main:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
