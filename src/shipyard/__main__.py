from shipyard.cli.app import app

app(prog_name="shipyard")
