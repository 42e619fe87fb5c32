from s3kv.emulator.api import Config, Faults, make_app

__all__ = ["Config", "Faults", "make_app"]
