from mailbridge.cli import cli

cli()
