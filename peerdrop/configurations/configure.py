import asyncio
import configparser
import os
from pathlib import Path

import peerdrop.avails.constants as const
from peerdrop.configurations import logger as _logger


def print_constants():
    print_string = (
        f'\n:configuration choices{"=" * 34}\n'
        f'{"USERNAME": <20} : {const.USERNAME or "-": <10}\n'
        f'{"RELAY": <20} : {f"{const.RELAY_IP}:{const.PORT_RELAY}": <10}\n'
        f'{"RELAY_BIND": <20} : {const.RELAY_BIND_IP: <10}\n'
        f'{"RECONNECT_INTERVAL": <20} : {const.RECONNECT_INTERVAL: <10}\n'
        f'{"CHUNK_DIRECT": <20} : {const.CHUNK_SIZE_DIRECT: <10}\n'
        f'{"CHUNK_RELAYED": <20} : {const.CHUNK_SIZE_RELAYED: <10}\n'
        f'{"MAX_FILE_SIZE": <20} : {const.MAX_FILE_SIZE: <10}\n'
        f'{"STUN": <20} : {", ".join(const.STUN_SERVERS): <10}\n'
        f'{"DOWNLOADS": <20} : {f"{const.PATH_DOWNLOAD}": <10}\n'
        f'{"=" * 56}\n'
    )
    with const.LOCK_PRINT:
        print('GLOBAL VERSION', const.VERSIONS['GLOBAL'])
        return print(print_string)


def set_paths(root=None):
    const.PATH_CURRENT = Path(root or os.getcwd())
    const.PATH_LOG = Path(const.PATH_CURRENT, 'logs')
    config_path = Path(const.PATH_CURRENT, 'configs')
    const.PATH_CONFIG_FILE = Path(config_path, const.DEFAULT_CONFIG_FILE_NAME)
    const.PATH_LOG_CONFIG = Path(config_path, const.LOG_CONFIG_NAME)
    const.PATH_CONFIG = config_path

    downloads_path = Path(os.path.expanduser('~'), 'Downloads')
    if not os.path.exists(downloads_path):
        downloads_path = Path(os.path.expanduser('~'), 'Desktop')
    const.PATH_DOWNLOAD = Path(downloads_path, const.APP_NAME)


async def load_configs(path=None):
    """Read the INI file into :mod:`constants`, writing the defaults first if it is missing

    Returns:
        configparser.ConfigParser: the parsed configuration
    """
    path = Path(path or const.PATH_CONFIG_FILE)
    config_map = configparser.ConfigParser(allow_no_value=True)

    def _helper():
        if not path.exists():
            _logger.info(f"no configuration at {path}, writing defaults")
            write_default_configurations(path)
        config_map.read(path)

    await asyncio.to_thread(_helper)

    set_constants(config_map)
    return config_map


def write_default_configurations(path):
    default_config_file = (
        '[RELAY]\n'
        'host = localhost\n'
        'bind_ip = 0.0.0.0\n'
        'port = 8080\n'
        'notify_unknown_recipient = yes\n'
        '\n'
        '[SESSION]\n'
        'reconnect_interval = 3.0\n'
        'backoff_factor = 1.0\n'
        'max_interval = 30.0\n'
        'failure_threshold = 5\n'
        'ping_interval = 30.0\n'
        'register_timeout = 6\n'
        '\n'
        '[TRANSFER]\n'
        'chunk_size_direct = 16384\n'
        'chunk_size_relayed = 262144\n'
        'high_watermark = 1048576\n'
        'low_watermark = 65536\n'
        'max_file_size = 524288000\n'
        'transfer_timeout = 10\n'
        'backpressure_timeout = 60\n'
        'download_path =\n'
        '\n'
        '[RTC]\n'
        'stun_servers = stun:stun.l.google.com:19302, stun:stun1.l.google.com:19302\n'
        'negotiation_timeout = 15\n'
        '\n'
        '[VERSIONS]\n'
        'global = 1.0\n'
        'wire = 1.0\n'
        'fo = 1.0\n'
    )
    os.makedirs(Path(path).parent, exist_ok=True)
    with open(path, 'w+') as config_file:
        config_file.write(default_config_file)


def set_constants(config_map: configparser.ConfigParser) -> bool:
    """Sets global constants from values in the configuration file.

    Missing sections or options keep the values already in :mod:`constants`.

    Raises:
        ValueError: if an option is present but malformed, or watermarks are inverted

    Returns:
        bool: True once every value was applied
    """

    def _get(getter, section, option, current):
        if not config_map.has_option(section, option):
            return current
        return getattr(config_map, getter)(section, option)

    const.RELAY_IP = _get('get', 'RELAY', 'host', const.RELAY_IP)
    const.RELAY_BIND_IP = _get('get', 'RELAY', 'bind_ip', const.RELAY_BIND_IP)
    const.PORT_RELAY = _get('getint', 'RELAY', 'port', const.PORT_RELAY)
    const.NOTIFY_UNKNOWN_RECIPIENT = _get(
        'getboolean', 'RELAY', 'notify_unknown_recipient', const.NOTIFY_UNKNOWN_RECIPIENT
    )

    const.RECONNECT_INTERVAL = _get('getfloat', 'SESSION', 'reconnect_interval', const.RECONNECT_INTERVAL)
    const.RECONNECT_BACKOFF_FACTOR = _get('getfloat', 'SESSION', 'backoff_factor', const.RECONNECT_BACKOFF_FACTOR)
    const.RECONNECT_MAX_INTERVAL = _get('getfloat', 'SESSION', 'max_interval', const.RECONNECT_MAX_INTERVAL)
    const.RECONNECT_FAILURE_THRESHOLD = _get(
        'getint', 'SESSION', 'failure_threshold', const.RECONNECT_FAILURE_THRESHOLD
    )
    const.PING_INTERVAL = _get('getfloat', 'SESSION', 'ping_interval', const.PING_INTERVAL)
    const.REGISTER_TIMEOUT = _get('getfloat', 'SESSION', 'register_timeout', const.REGISTER_TIMEOUT)

    const.CHUNK_SIZE_DIRECT = _get('getint', 'TRANSFER', 'chunk_size_direct', const.CHUNK_SIZE_DIRECT)
    const.CHUNK_SIZE_RELAYED = _get('getint', 'TRANSFER', 'chunk_size_relayed', const.CHUNK_SIZE_RELAYED)
    const.HIGH_WATERMARK = _get('getint', 'TRANSFER', 'high_watermark', const.HIGH_WATERMARK)
    const.LOW_WATERMARK = _get('getint', 'TRANSFER', 'low_watermark', const.LOW_WATERMARK)
    const.MAX_FILE_SIZE = _get('getint', 'TRANSFER', 'max_file_size', const.MAX_FILE_SIZE)
    const.DEFAULT_TRANSFER_TIMEOUT = _get('getfloat', 'TRANSFER', 'transfer_timeout', const.DEFAULT_TRANSFER_TIMEOUT)
    const.BACKPRESSURE_TIMEOUT = _get('getfloat', 'TRANSFER', 'backpressure_timeout', const.BACKPRESSURE_TIMEOUT)
    if download_path := _get('get', 'TRANSFER', 'download_path', None):
        const.PATH_DOWNLOAD = Path(download_path).expanduser()

    if stun := _get('get', 'RTC', 'stun_servers', None):
        const.STUN_SERVERS = tuple(s.strip() for s in stun.split(',') if s.strip())
    const.NEGOTIATION_TIMEOUT = _get('getfloat', 'RTC', 'negotiation_timeout', const.NEGOTIATION_TIMEOUT)

    if config_map.has_section('VERSIONS'):
        const.VERSIONS = {k.upper(): float(v) for k, v in config_map['VERSIONS'].items()}

    if const.LOW_WATERMARK >= const.HIGH_WATERMARK:
        raise ValueError(f"low_watermark ({const.LOW_WATERMARK}) must be below high_watermark ({const.HIGH_WATERMARK})")
    if min(const.CHUNK_SIZE_DIRECT, const.CHUNK_SIZE_RELAYED) <= 0:
        raise ValueError("chunk sizes must be positive")

    return True
