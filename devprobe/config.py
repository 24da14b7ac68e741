"""
Core configuration management
"""
from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Device test runner settings"""

    # Paths
    project_root: Path = Path(__file__).parent.parent
    log_dir: Path = project_root / "logs"

    # Receive buffers
    serial_buffer_capacity: int = 1024
    socket_buffer_capacity: int = 2048

    # Serial line
    serial_read_timeout_ms: int = 500
    serial_write_timeout_ms: int = 500
    serial_reader_idle_sec: float = 0.005

    # TCP client
    socket_connect_timeout_sec: float = 5.0
    socket_send_timeout_sec: float = 5.0
    reconnect_delay_sec: float = 2.0
    reader_idle_sec: float = 0.005
    thread_join_timeout_sec: float = 1.0

    # Step sequencer
    receive_poll_attempts: int = 30
    receive_poll_interval_ms: int = 10

    class Config:
        env_prefix = "DEVPROBE_"
        env_file = ".env"


settings = Settings()
