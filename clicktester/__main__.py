from clicktester.cli import main

raise SystemExit(main())
