from replayci.cli import cli

cli()
