"""
Entry point for ``python -m godot_sync``.
"""

from godot_sync.cli import main


if __name__ == "__main__":
    main()
