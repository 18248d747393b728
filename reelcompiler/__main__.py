from reelcompiler.runner import main

main()
