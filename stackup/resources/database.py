"""Relational database lifecycle through the mysql client."""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from stackup.errors import ResourceLifecycleError
from stackup.resources.base import ResourceManager


DATABASE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(frozen=True)
class CharsetSpec:
    charset: str = "utf8"


class DatabaseManager(ResourceManager):
    """
    Drops and recreates service databases.

    The password is handed to the client through MYSQL_PWD so it never
    appears in an argument list or a log line.
    """

    kind = "database"

    def __init__(self, owner: str, user: str = "root", password: str = "", host: str = "127.0.0.1", **kwargs):
        super().__init__(owner, **kwargs)
        self.user = user
        self.password = password
        self.host = host

    def _mysql(self, sql: str, extra_args: Optional[List[str]] = None):
        command = ["mysql", f"-u{self.user}", f"-h{self.host}"]
        command.extend(extra_args or [])
        command.extend(["-e", sql])
        return self.runner.run(command, env={"MYSQL_PWD": self.password})

    def _check_name(self, name: str) -> None:
        if not DATABASE_NAME_PATTERN.match(name):
            raise ResourceLifecycleError(str(self.key(name)), f"invalid database name {name!r}")

    def exists(self, name: str) -> bool:
        self._check_name(name)
        result = self._mysql(f"SHOW DATABASES LIKE '{name}';", ["-N", "-B"])
        return name in result.stdout.split()

    def _destroy(self, name: str) -> None:
        self._mysql(f"DROP DATABASE IF EXISTS {name};")

    def _create(self, name: str, spec: Any) -> Dict[str, Any]:
        self._check_name(name)
        charset = (spec or CharsetSpec()).charset
        if not DATABASE_NAME_PATTERN.match(charset):
            raise ResourceLifecycleError(str(self.key(name)), f"invalid charset {charset!r}")
        self._mysql(f"CREATE DATABASE {name} CHARACTER SET {charset};")
        return {"charset": charset, "host": self.host}
