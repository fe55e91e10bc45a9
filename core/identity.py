"""
Identity Loader - Персистентные ключи узлов
===========================================

[IDENTITY] Каждый узел флота имеет стабильную идентичность между
запусками: seed ключа Ed25519 хранится в <key_dir>/node-<index>.key.
Отсутствие файла - не ошибка: ключ генерируется и сохраняется.
Повреждённый файл - KeyLoadError, узел не создаётся.
"""

import logging
import tempfile
from pathlib import Path
from typing import Optional, Union

from nacl.exceptions import CryptoError

from .errors import KeyLoadError
from .transport import Crypto

logger = logging.getLogger(__name__)


def key_path(index: int, key_dir: Optional[Union[str, Path]] = None) -> Path:
    """Путь к файлу ключа узла с данным индексом."""
    base = Path(key_dir) if key_dir else Path(tempfile.gettempdir())
    return base / f"node-{index}.key"


def load_or_create_identity(
    index: int,
    key_dir: Optional[Union[str, Path]] = None,
) -> Crypto:
    """
    Загрузить или создать криптографическую идентичность узла.

    Args:
        index: Индекс узла во флоте
        key_dir: Директория ключей (по умолчанию системная temp)

    Returns:
        Crypto с ключевой парой узла

    Raises:
        KeyLoadError: файл есть, но не читается или повреждён
    """
    path = key_path(index, key_dir)

    if path.exists():
        try:
            seed = path.read_bytes()
            crypto = Crypto.from_seed(seed)
        except (OSError, ValueError, CryptoError) as e:
            raise KeyLoadError(f"failed to load key from {path}: {e}") from e
        logger.debug(f"[IDENTITY] Loaded key for node {index}: {crypto.node_id}")
        return crypto

    crypto = Crypto()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(crypto.export_identity())
    except OSError as e:
        raise KeyLoadError(f"failed to persist key to {path}: {e}") from e
    logger.info(f"[IDENTITY] Generated new key for node {index} at {path}")
    return crypto
