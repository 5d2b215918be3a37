"""`python -m prewarm` 入口。"""

from __future__ import annotations

from prewarm.cli.main import main

raise SystemExit(main())
