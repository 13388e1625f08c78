"""响应标准化：把解码后的事件转成按 choice 区分的输出单元。"""

from dataclasses import dataclass
from typing import Any, List, Optional

from completion_core.domain.exceptions import NormalizationError
from completion_core.domain.models import OutputUnit
from completion_core.providers.base import ProviderDescriptor


@dataclass(frozen=True)
class ChoiceResult:
    """单个 choice 的标准化结果；unit 为 None 表示本事件对该 choice 没有内容。"""

    index: int
    unit: Optional[OutputUnit] = None
    error: Optional[NormalizationError] = None


class ResponseNormalizer:
    def normalize(self, event: Any, descriptor: ProviderDescriptor) -> List[ChoiceResult]:
        """事件整体结构不对时抛出 NormalizationError；单个 choice 出错只记录在该 choice 的结果里。"""

        try:
            choices = descriptor.split_choices(event)
        except NormalizationError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise NormalizationError(f"Malformed {descriptor.model_provider} event: {e}", event=event)

        results: List[ChoiceResult] = []
        for index, raw in choices:
            try:
                unit = descriptor.transform_response(raw)
            except NormalizationError as e:
                e.index = index
                results.append(ChoiceResult(index=index, error=e))
            else:
                results.append(ChoiceResult(index=index, unit=unit))
        return results
