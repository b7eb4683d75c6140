from jobshell.shell import main

main()
