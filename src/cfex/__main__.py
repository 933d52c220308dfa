from cfex.cli import main

raise SystemExit(main())
