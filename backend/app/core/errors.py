from __future__ import annotations


class PageCastError(Exception):
    """Base class for failures raised by the audio generation pipeline."""


class PredictionError(PageCastError):
    pass


# 输入为空：不发起任何网络请求
class PredictionInputError(PredictionError):
    pass


# 缺少模型版本等必要配置
class PredictionConfigError(PredictionError):
    pass


# 网络、HTTP 状态或解析失败
class PredictionRequestError(PredictionError):
    pass


class PredictionFailedError(PredictionError):
    """The remote job reached the ``failed`` state."""

    def __init__(self, message: str | None, prediction_id: str | None = None) -> None:
        self.remote_message = message or ""
        self.prediction_id = prediction_id
        super().__init__(f"prediction failed: {self.remote_message or 'unknown error'}")


class PredictionCanceledError(PredictionError):
    def __init__(self, prediction_id: str | None = None) -> None:
        self.prediction_id = prediction_id
        super().__init__("prediction was canceled")


class PredictionTimeoutError(PredictionError):
    def __init__(self, attempts: int, prediction_id: str | None = None) -> None:
        self.attempts = attempts
        self.prediction_id = prediction_id
        super().__init__(f"prediction timed out after {attempts} attempts")


# 本地音频写入失败
class AudioStoreError(PageCastError):
    pass


# 远端存储上传失败（本地文件保留）
class AudioUploadError(AudioStoreError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class SourceDownloadError(PageCastError):
    pass


class PDFExtractionError(PageCastError):
    pass


class SegmentStoreError(PageCastError):
    pass
