from stagerun.cli import main

raise SystemExit(main())
