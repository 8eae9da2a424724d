"""featureflag_client ライブラリの例外型定義"""

from __future__ import annotations


class FeatureFlagClientError(Exception):
    """featureflag_client ライブラリのエラー基底クラス。

    フラグ評価そのものは例外を送出しない。設定・ファイル読み込み・HTTP 取得など
    呼び出し元に失敗を伝える必要がある箇所でのみ使用する。
    """

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FeatureFlagClientErrorCodes:
    """FeatureFlagClientError のエラーコード定数。"""

    CONFIG_ERROR: str = "CONFIG_ERROR"
    HTTP_ERROR: str = "HTTP_ERROR"
    UNAUTHORIZED: str = "UNAUTHORIZED"
    INVALID_DATA: str = "INVALID_DATA"
    STORE_ERROR: str = "STORE_ERROR"
    FILE_DATA_ERROR: str = "FILE_DATA_ERROR"
