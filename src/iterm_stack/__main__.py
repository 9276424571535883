from iterm_stack.cli import main

main()
