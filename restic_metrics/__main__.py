from restic_metrics.cli import main

main()
