"""Exception hierarchy. Everything fatal derives from GeoAllowError."""


class GeoAllowError(Exception):
    """Base class; main() turns it into an ERROR log line and a non-zero exit."""
    exit_code = 1


class ConfigError(GeoAllowError):
    exit_code = 2


class FetchError(GeoAllowError):
    """Transient download failure for one unit of work (retries exhausted)."""


class IntegrityError(GeoAllowError):
    """Bulk data could not be fetched or failed checksum verification."""


class InvariantError(GeoAllowError):
    """Empty AllowSet or a default route in the compiled output."""


class BackendNotFoundError(GeoAllowError):
    pass


class CommandError(GeoAllowError):
    def __init__(self, args, returncode, stderr=""):
        self.cmd = list(args)
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"Command failed ({returncode}): {' '.join(self.cmd)}{detail}")


class LockError(GeoAllowError):
    pass
