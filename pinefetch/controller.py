"""
Defines the main AppController class, the entry point the front end talks to.
"""
import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Union

from .config import ConfigManager, Settings
from .dependencies import DependencyManager
from .downloads import DownloadManager
from .events import Subscription
from .jobs import DownloadRequest
from .process_runner import ProcessRunner
from .url_extractor import MediaInfo, URLInfoExtractor
from .version_check import InstalledVersion, VersionChecker, is_update_available


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, config_manager: ConfigManager, runner: Optional[ProcessRunner] = None,
                 dependencies: Optional[DependencyManager] = None):
        """
        Initializes the AppController.

        Args:
            config_manager: The manager for handling configuration persistence.
            runner: Optional process runner, mainly for tests.
            dependencies: Optional executable resolver, mainly for tests.
        """
        self.config_manager = config_manager
        self.logger = logging.getLogger(__name__)
        self.dep_manager = dependencies or DependencyManager()
        self.download_manager = DownloadManager(config_manager, runner, self.dep_manager)
        self.version_checker = VersionChecker()

    @property
    def config(self) -> Settings:
        return self.config_manager.settings

    def subscribe(self) -> Subscription:
        return self.download_manager.subscribe()

    def enqueue(self, request: Union[DownloadRequest, Mapping[str, Any]]) -> str:
        return self.download_manager.enqueue(request)

    def cancel(self, job_id: str):
        self.download_manager.cancel(job_id)

    def clear_queue(self) -> int:
        return self.download_manager.clear()

    async def wait_until_idle(self):
        await self.download_manager.join()

    def get_config(self) -> Dict[str, Any]:
        return self.config_manager.get()

    def set_config(self, partial: Dict[str, Any]) -> Settings:
        """Validates and saves new settings, then applies a changed concurrency limit."""
        settings = self.config_manager.set(partial)
        if 'max_concurrent_downloads' in partial:
            self.download_manager.refresh_admission()
        return settings

    async def get_installed_version(self, path: Optional[str] = None) -> InstalledVersion:
        """Reports the version of `path`, or of the configured/discovered yt-dlp."""
        resolved = await asyncio.to_thread(self.dep_manager.find_yt_dlp_for_version, path, self.config.executable_path)
        return await self.version_checker.get_installed_version(resolved)

    async def get_latest_version(self) -> Optional[str]:
        return await self.version_checker.get_latest_version()

    async def check_for_update(self, path: Optional[str] = None) -> Dict[str, Any]:
        """Compares the installed yt-dlp with the latest release."""
        installed, latest = await asyncio.gather(self.get_installed_version(path), self.get_latest_version())
        return {
            'installed': installed.version,
            'path': str(installed.resolved_path),
            'latest': latest,
            'update_available': bool(latest) and is_update_available(installed.version, latest),
        }

    async def load_info(self, url: str) -> MediaInfo:
        yt_dlp = await asyncio.to_thread(self.dep_manager.find_yt_dlp, self.config.executable_path)
        deno = await asyncio.to_thread(self.dep_manager.find_deno)
        return await URLInfoExtractor(yt_dlp, deno).load_info(url)

    async def shutdown(self):
        """Handles application shutdown logic."""
        self.logger.info("Application closing.")
        await self.download_manager.shutdown()
