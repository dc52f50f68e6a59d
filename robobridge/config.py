"""
Application configuration loaded from environment variables / .env file.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Serial link to the actuator
    serial_path: str = "/dev/ttyUSB0"
    serial_baudrate: int = 9600
    serial_read_timeout: float = 0.1

    # Link lifecycle timings (seconds)
    open_attempts: int = 3
    open_retry_delay: float = 0.4
    settle_delay: float = 2.0
    drain_throttle: float = 0.12
    auto_reconnect_interval: float = 5.0
    auto_reconnect_enabled: bool = True

    # Command written to the actuator when a trigger carries no message
    default_command: str = "F"

    # Solana account watcher
    solana_ws_url: str = "wss://api.devnet.solana.com"
    watch_account: str = "DsjJMaAxPoXARLsCW3uc3ThheAiy4b5ebUB7WzufDKwd"
    commitment: str = "processed"
    payer_account: str = ""

    # Per-subscriber buffer for the event stream
    event_buffer_size: int = 100

    # API server
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_token: str = ""
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
