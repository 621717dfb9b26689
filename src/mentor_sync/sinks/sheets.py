"""
Google Sheets 表格目标
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import gspread
from google.oauth2.service_account import Credentials as ServiceCredentials

from mentor_sync.core.projection import ProjectedRow
from mentor_sync.models.sync_config import SheetsSinkConfig
from mentor_sync.sinks.base import BaseTabularSink, SinkError
from mentor_sync.utils.logging import get_logger

logger = get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

# 429 与 5xx 视为瞬时失败
_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


def _api_status(error: gspread.exceptions.APIError) -> Optional[int]:
    code = getattr(error, "code", None)
    if isinstance(code, int):
        return code
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


class GoogleSheetsSink(BaseTabularSink):
    """
    Google Sheets 写入器

    使用 gspread + 服务账号凭据。gspread 是同步库，
    所有调用放到工作线程执行。
    """

    def __init__(self, config: SheetsSinkConfig, client: Optional[gspread.Client] = None):
        """
        初始化写入器

        参数:
            config: Sheets 目标配置
            client: 已授权的 gspread 客户端（测试中注入）
        """
        super().__init__(config.name, chunk_size=config.chunk_size)
        self.config = config
        self._client = client
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: Dict[str, gspread.Worksheet] = {}

    async def connect(self) -> None:
        """授权并打开表格"""
        try:
            self._spreadsheet = await asyncio.to_thread(self._open_spreadsheet)
        except gspread.exceptions.APIError as e:
            raise SinkError(f"打开表格失败: {e}", transient=_api_status(e) in _RETRYABLE_STATUS) from e
        except (OSError, ValueError) as e:
            raise SinkError(f"加载服务账号凭据失败: {e}") from e

        logger.info("sheets_connected", sink=self.name, spreadsheet_id=self.config.spreadsheet_id)

    def _open_spreadsheet(self) -> gspread.Spreadsheet:
        if self._client is None:
            creds = ServiceCredentials.from_service_account_file(
                self.config.credentials_file, scopes=SCOPES
            )
            self._client = gspread.authorize(creds)
        return self._client.open_by_key(self.config.spreadsheet_id)

    async def disconnect(self) -> None:
        self._worksheets.clear()
        self._spreadsheet = None

    def _get_worksheet(self, title: str, columns: Sequence[str]) -> gspread.Worksheet:
        """获取工作表，不存在时创建，为空时写入表头"""
        if title in self._worksheets:
            return self._worksheets[title]
        if self._spreadsheet is None:
            # connect() 失败后在写入时重新打开
            self._spreadsheet = self._open_spreadsheet()

        try:
            worksheet = self._spreadsheet.worksheet(title)
        except gspread.exceptions.WorksheetNotFound:
            worksheet = self._spreadsheet.add_worksheet(
                title=title, rows=1000, cols=max(len(columns), 1)
            )
            logger.info("worksheet_created", sink=self.name, worksheet=title)

        if self.config.write_header and columns and not worksheet.row_values(1):
            worksheet.append_row(list(columns), value_input_option="RAW")

        self._worksheets[title] = worksheet
        return worksheet

    def _append_sync(
        self,
        table_ref: str,
        rows: Sequence[ProjectedRow],
        columns: Sequence[str],
    ) -> Any:
        worksheet = self._get_worksheet(table_ref, columns)
        values: List[List[Any]] = [list(row) for row in rows]
        return worksheet.append_rows(values, value_input_option="RAW")

    async def _write_chunk(
        self,
        table_ref: str,
        rows: Sequence[ProjectedRow],
        columns: Sequence[str],
    ) -> None:
        """追加一个分块"""
        try:
            await asyncio.to_thread(self._append_sync, table_ref, rows, columns)
        except gspread.exceptions.APIError as e:
            status = _api_status(e)
            raise SinkError(
                f"Sheets API 错误 ({status}): {e}",
                transient=status in _RETRYABLE_STATUS,
            ) from e
        except (FileNotFoundError, ValueError) as e:
            raise SinkError(f"加载服务账号凭据失败: {e}") from e
        except (ConnectionError, TimeoutError, OSError) as e:
            raise SinkError(f"Sheets 网络错误: {e}", transient=True) from e
