import os

# The service apps build their shared tracker at import time.
os.environ["DATABASE_URL"] = "sqlite://"
