from asvsense.cli import main

main()
