from urloracle.cli import app

app(prog_name="url-oracle")
