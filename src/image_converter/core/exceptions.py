"""项目内使用的自定义异常定义。"""


class ImageConverterError(Exception):
    """基础异常类型。"""

    status = "error"


class InvalidParametersError(ImageConverterError):
    """参数或输入路径不合法时抛出，整个批次在派发前失败。"""

    status = "error-params"


class DecodeError(ImageConverterError):
    """源文件无法解码。"""

    status = "error-decode"


class UnsupportedFormatError(DecodeError):
    """文件签名不属于任何受支持的格式。"""


class CorruptImageError(DecodeError):
    """文件签名可识别，但内容已损坏。"""


class EncodeError(ImageConverterError):
    """编码或写入输出文件失败。"""

    status = "error-encode"


class RenderError(ImageConverterError):
    """PDF 打开或页面渲染失败。"""

    status = "error-render"


class WriteError(ImageConverterError):
    """PDF 组装或输出失败。"""

    status = "error-write"


class WatermarkError(ImageConverterError):
    """水印处理失败。"""

    status = "error-watermark"


class InvalidOverlayError(WatermarkError):
    """水印叠加图片无法加载。"""

