from max_jail.cli.main import main

raise SystemExit(main())
