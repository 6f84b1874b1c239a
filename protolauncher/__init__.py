"""Main module for the ProtoLauncher API.

The package resolves game versions, authenticates players, fetches and validates every
artifact a version requires and finally assembles a process invocation. The `pipeline`
module is the usual entry point, each stage being usable on its own through the
`version`, `fetcher`, `auth` and `launch` modules.
"""

LAUNCHER_NAME = "protolauncher"
LAUNCHER_VERSION = "1.0.0"
LAUNCHER_AUTHORS = ["ProtoLauncher contributors"]
LAUNCHER_URL = "https://github.com/protolauncher/protolauncher"
