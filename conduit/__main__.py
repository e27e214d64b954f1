"""python -m conduit"""

from conduit.main import main

main()
