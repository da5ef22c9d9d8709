from ghgpipe.api.main import app

__all__ = ["app"]
