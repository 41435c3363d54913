"""Stages that prepare the host: packages, source checkouts, libraries."""

from typing import Any, Dict, List

from stackup.stages.base import Stage


# Package list keys installed regardless of the selection
GENERAL_PACKAGES = "general"


class PackagesStage(Stage):
    """Install host packages for the general list and every enabled service."""

    name = "packages"

    def execute(self) -> Dict[str, Any]:
        packages: List[str] = []
        for key, names in self.config.packages.items():
            if key != GENERAL_PACKAGES and not self.selection.is_enabled(key):
                continue
            for package in names:
                if package not in packages:
                    packages.append(package)

        self.context.collaborators.install_packages(packages)
        return {"packages": len(packages)}


class SourcesStage(Stage):
    """Check out sources of enabled services."""

    name = "sources"

    def execute(self) -> Dict[str, Any]:
        fetched = []
        for source in self.config.sources:
            if not self.selection.is_enabled(source.service):
                continue
            self.context.collaborators.fetch_source(source)
            fetched.append(source.service.value)
        return {"sources": fetched}


class LibrariesStage(Stage):
    name = "libraries"

    def execute(self) -> Dict[str, Any]:
        registered = []
        for source in self.config.sources:
            if source.library and self.selection.is_enabled(source.service):
                self.context.collaborators.register_library(source)
                registered.append(source.service.value)
        return {"libraries": registered}
