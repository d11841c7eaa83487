from __future__ import annotations

from gtdtxt_formula.installer.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
