"""Configuration management using Pydantic settings."""

from typing import List, Optional, TYPE_CHECKING

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    app_name: str = "Fleet Inventory"
    debug: bool = False

    # Collector settings
    collector_max_concurrency: int = 10  # Maximum concurrently running fetches
    collector_task_timeout: float = 30.0  # Deadline for a single device fetch (seconds)
    telemetry_timeout: float = 15.0  # Deadline passed to live telemetry calls
    telemetry_dns_suffix: Optional[str] = None  # Appended to short names when calling hosts

    # Inventory sources (comma-separated, evaluated in order)
    pvs_servers: str = ""
    broker_controllers: str = ""
    vcenter_servers: str = ""
    directory_server: Optional[str] = None
    ad_search_base: Optional[str] = None

    # Device selection
    device_name_filter: str = "*"
    vm_name_pattern: str = "*"
    vm_name_split_char: Optional[str] = None  # e.g. "_" strips "VDI001_clone" to "VDI001"

    # Orphan handling
    orphan_provisioning_types: str = "PVS"
    orphan_include_unclassified: bool = False
    orphan_always_include: bool = False

    # WinRM connection settings
    winrm_host: Optional[str] = None  # Management host running the vendor snap-ins
    winrm_port: int = 5985
    winrm_transport: str = "negotiate"
    winrm_username: Optional[str] = None
    winrm_password: Optional[str] = None
    winrm_operation_timeout: float = 20.0  # seconds to wait for WinRM calls
    winrm_connection_timeout: float = 30.0  # network connect timeout in seconds
    winrm_read_timeout: float = 30.0  # HTTP read timeout in seconds

    # Offline snapshot and output
    snapshot_file: Optional[str] = None  # YAML/JSON file replacing live sources
    output_path: Optional[str] = None  # Aggregate JSON destination; stdout when unset

    class Config:
        env_file = ".env"
        case_sensitive = False

    @staticmethod
    def _split_list(value: Optional[str]) -> List[str]:
        if not value:
            return []
        return [item.strip() for item in value.split(",") if item.strip()]

    def get_pvs_servers_list(self) -> List[str]:
        """Parse comma-separated PVS server list, preserving order."""
        return self._split_list(self.pvs_servers)

    def get_broker_controllers_list(self) -> List[str]:
        """Parse comma-separated Delivery Controller list, preserving order."""
        return self._split_list(self.broker_controllers)

    def get_vcenter_servers_list(self) -> List[str]:
        """Parse comma-separated vCenter server list, preserving order."""
        return self._split_list(self.vcenter_servers)

    def get_orphan_provisioning_types(self) -> List[str]:
        """Provisioning types whose orphan candidates are reported."""
        return [item.upper() for item in self._split_list(self.orphan_provisioning_types)]

    def has_winrm_credentials(self) -> bool:
        """Check if explicit WinRM credentials are configured."""
        return bool(self.winrm_username and self.winrm_password)


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .config_validation import ConfigValidationResult

# Cache of the configuration validation result so it can be reused across modules
_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if available."""

    return _config_validation_result
