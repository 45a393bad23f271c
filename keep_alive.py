import logging
from threading import Thread

from flask import Flask

logger = logging.getLogger("primebot.keep_alive")

app = Flask("primebot")


# Keep-alive endpoint for hosts that sleep idle processes
@app.route("/")
def home():
    return "Prime bot is alive!"


def keep_alive(port: int, host: str = "0.0.0.0") -> Thread:
    t = Thread(target=app.run, kwargs={"host": host, "port": port}, daemon=True, name="keep-alive")
    t.start()
    logger.info("keep_alive_started host=%s port=%s", host, port)
    return t
