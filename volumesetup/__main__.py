from volumesetup.main import main

raise SystemExit(main())
