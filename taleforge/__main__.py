from taleforge.cli import main

main()
