from singlink_client.app import main

raise SystemExit(main())
