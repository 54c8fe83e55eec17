from flowmate.runner.worker import main

raise SystemExit(main())
