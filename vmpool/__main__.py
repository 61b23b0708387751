from vmpool.main import run

run()
