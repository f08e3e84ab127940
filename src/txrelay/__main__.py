from txrelay.cli import main

main()
