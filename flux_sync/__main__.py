"""Run the flux-sync daemon with `python -m flux_sync`."""

from .tool.fluxd import main

if __name__ == "__main__":
    main()
