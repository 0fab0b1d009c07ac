from drivewatch.server import main

main()
