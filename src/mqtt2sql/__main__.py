from mqtt2sql.cli import main

raise SystemExit(main())
