"""
File-based storage implementation.

Implements the StorageInterface with plain files, optimized for debugging:
events are appended as JSON lines so the log can be tailed and diffed.
"""

import os
import json
import aiofiles
from pathlib import Path
from typing import Dict, Any, List, Optional
import logging
import time

from .storage_interface import StorageInterface

logger = logging.getLogger(__name__)


class FileStorage(StorageInterface):
    """
    File-based storage implementation following the directory structure:

    spaces/
        {space_id}/
            events/
                {branch_id}.jsonl   # Append-only event records
            branches/
                {branch_id}.json    # Branch metadata
            heads.json              # branch_id -> head_event_id index
    system/
        {state_key}.json            # System state data
    """

    def __init__(self, storage_config: Dict[str, Any]):
        super().__init__(storage_config)

        self.base_dir = Path(storage_config.get('base_dir', './storage_data'))
        self.spaces_dir = self.base_dir / 'spaces'
        self.system_dir = self.base_dir / 'system'

        self.pretty_print_json = storage_config.get('pretty_print_json', True)

        self.logger.info(f"FileStorage initialized with base_dir: {self.base_dir}")

    async def initialize(self) -> bool:
        """Create necessary directories and verify write permissions."""
        try:
            for directory in (self.spaces_dir, self.system_dir):
                directory.mkdir(parents=True, exist_ok=True)

            test_file = self.base_dir / '.storage_test'
            async with aiofiles.open(test_file, 'w') as f:
                await f.write('{"test": true}')
            if test_file.exists():
                test_file.unlink()

            self.logger.info("FileStorage initialized successfully")
            return True

        except Exception as e:
            self.logger.error(f"Failed to initialize FileStorage: {e}", exc_info=True)
            return False

    async def shutdown(self) -> bool:
        """File storage holds no open handles between calls."""
        self.logger.info("FileStorage shutdown completed")
        return True

    def _sanitize_filename(self, filename: str) -> str:
        """Sanitize a string to be safe as a filename."""
        safe_chars = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_."
        return ''.join(c if c in safe_chars else '_' for c in filename)

    def _get_space_dir(self, space_id: str) -> Path:
        return self.spaces_dir / self._sanitize_filename(space_id)

    async def _write_json_file(self, file_path: Path, data: Any) -> bool:
        """Write JSON through a temp file so readers never see a partial document."""
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = file_path.with_suffix(file_path.suffix + '.tmp')
            json_str = json.dumps(data, indent=2 if self.pretty_print_json else None, default=str)
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(json_str)
            os.replace(tmp_path, file_path)
            return True
        except Exception as e:
            self.logger.error(f"Failed to write JSON file {file_path}: {e}", exc_info=True)
            return False

    async def _read_json_file(self, file_path: Path) -> Optional[Any]:
        try:
            if not file_path.exists():
                return None
            async with aiofiles.open(file_path, 'r', encoding='utf-8') as f:
                content = await f.read()
            return json.loads(content)
        except Exception as e:
            self.logger.error(f"Failed to read JSON file {file_path}: {e}", exc_info=True)
            return None

    # ===== Event Log =====

    async def append_event(self, space_id: str, branch_id: str, event_data: Dict[str, Any]) -> bool:
        file_path = self._get_space_dir(space_id) / 'events' / f"{self._sanitize_filename(branch_id)}.jsonl"
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(event_data, default=str)
            async with aiofiles.open(file_path, 'a', encoding='utf-8') as f:
                await f.write(line + "\n")
            return True
        except Exception as e:
            self.logger.error(f"Failed to append event {event_data.get('id')} to {file_path}: {e}", exc_info=True)
            return False

    async def load_events(self, space_id: str, branch_id: Optional[str] = None) -> List[Dict[str, Any]]:
        events_dir = self._get_space_dir(space_id) / 'events'
        if not events_dir.exists():
            return []
        if branch_id is not None:
            files = [events_dir / f"{self._sanitize_filename(branch_id)}.jsonl"]
        else:
            files = sorted(events_dir.glob('*.jsonl'))

        events: List[Dict[str, Any]] = []
        seen_ids = set()
        for file_path in files:
            if not file_path.exists():
                continue
            try:
                async with aiofiles.open(file_path, 'r', encoding='utf-8') as f:
                    async for line in f:
                        line = line.strip()
                        if not line:
                            continue
                        record = json.loads(line)
                        if record.get('id') in seen_ids:
                            continue
                        seen_ids.add(record.get('id'))
                        events.append(record)
            except Exception as e:
                self.logger.error(f"Failed to read events from {file_path}: {e}", exc_info=True)
        return events

    # ===== Head Index =====

    async def set_branch_head(self, space_id: str, branch_id: str, head_event_id: Optional[str]) -> bool:
        heads_path = self._get_space_dir(space_id) / 'heads.json'
        heads = await self._read_json_file(heads_path) or {}
        heads[branch_id] = head_event_id
        return await self._write_json_file(heads_path, heads)

    async def load_branch_heads(self, space_id: str) -> Dict[str, Optional[str]]:
        return await self._read_json_file(self._get_space_dir(space_id) / 'heads.json') or {}

    # ===== Branch Metadata =====

    async def store_branch(self, space_id: str, branch_data: Dict[str, Any]) -> bool:
        file_path = self._get_space_dir(space_id) / 'branches' / f"{self._sanitize_filename(branch_data['branch_id'])}.json"
        return await self._write_json_file(file_path, branch_data)

    async def load_branches(self, space_id: str) -> List[Dict[str, Any]]:
        branches_dir = self._get_space_dir(space_id) / 'branches'
        if not branches_dir.exists():
            return []
        branches = []
        for file_path in sorted(branches_dir.glob('*.json')):
            data = await self._read_json_file(file_path)
            if data:
                branches.append(data)
        return branches

    async def delete_branch(self, space_id: str, branch_id: str) -> bool:
        try:
            file_path = self._get_space_dir(space_id) / 'branches' / f"{self._sanitize_filename(branch_id)}.json"
            if file_path.exists():
                file_path.unlink()
            heads_path = self._get_space_dir(space_id) / 'heads.json'
            heads = await self._read_json_file(heads_path) or {}
            if branch_id in heads:
                del heads[branch_id]
                return await self._write_json_file(heads_path, heads)
            return True
        except Exception as e:
            self.logger.error(f"Failed to delete branch {branch_id} in space {space_id}: {e}", exc_info=True)
            return False

    # ===== System State =====

    async def store_system_state(self, state_key: str, state_data: Dict[str, Any]) -> bool:
        file_path = self.system_dir / f"{self._sanitize_filename(state_key)}.json"
        data = dict(state_data)
        data['_stored_at'] = time.time()
        return await self._write_json_file(file_path, data)

    async def load_system_state(self, state_key: str) -> Optional[Dict[str, Any]]:
        data = await self._read_json_file(self.system_dir / f"{self._sanitize_filename(state_key)}.json")
        if data is not None:
            data.pop('_stored_at', None)
        return data

    async def health_check(self) -> Dict[str, Any]:
        try:
            writable = os.access(self.base_dir, os.W_OK)
            space_count = len([p for p in self.spaces_dir.iterdir() if p.is_dir()]) if self.spaces_dir.exists() else 0
            return {
                "status": "healthy" if writable else "unhealthy",
                "backend_type": "FileStorage",
                "base_dir": str(self.base_dir),
                "writable": writable,
                "space_count": space_count,
            }
        except Exception as e:
            return {"status": "unhealthy", "backend_type": "FileStorage", "error": str(e)}
