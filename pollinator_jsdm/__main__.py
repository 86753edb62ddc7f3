import sys

from pollinator_jsdm.pipelines import main

sys.exit(main())
