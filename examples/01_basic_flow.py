"""示例 1: 最基础的 Flow 用法（不需要模型）"""

import asyncio
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import BaseModel

from tiny_genkit import Genkit, InMemoryFlowStateStore, InMemoryTraceStore, ValidationError


class Order(BaseModel):
    dish: str
    quantity: int = 1


async def main():
    """
    基础用法示例

    展示 tiny_genkit 的核心组件:
    - Genkit: 宿主对象（持有 Registry）
    - Flow: 带输入/输出契约的用户逻辑
    - TraceStore / FlowStateStore: 记录每次调用

    设计理念:
    - Flow 是无状态的，每次调用独立
    - 嵌套调用通过 ctx 传递上下文，共享同一个 trace
    """
    # 1. 创建宿主（显式指定存储，方便查看调用记录）
    ai = Genkit(trace_store=InMemoryTraceStore(), flow_state_store=InMemoryFlowStateStore())

    # 2. 定义 Flow
    @ai.define_flow(input_schema=Order, output_schema=str)
    async def price(order: Order) -> str:
        """计算价格"""
        return f"{order.dish} x{order.quantity} = {order.quantity * 12} 元"

    @ai.define_flow()
    async def receipt(orders, ctx) -> list:
        """为多个订单开票（嵌套调用 price）"""
        return [await price.run(order, context=ctx) for order in orders]

    # 3. 调用
    print('=== 单次调用 ===')
    print(await price({"dish": "麻婆豆腐", "quantity": 2}))

    print('\n=== 嵌套调用 ===')
    telemetry = {}
    lines = await receipt.run([{"dish": "回锅肉"}, {"dish": "夫妻肺片", "quantity": 3}], telemetry=telemetry)
    for line in lines:
        print(f'  {line}')

    # 4. 输入不符合契约
    print('\n=== 输入校验 ===')
    try:
        await price({"quantity": 2})
    except ValidationError as e:
        print(f'❌ {e.status}: {e.message}')

    # 5. 查看 trace
    print('\n=== Trace ===')
    trace = await ai.registry.trace_store.load(telemetry['traceId'])
    for span in trace.spans.values():
        print(f'  [{span.state.value}] {span.display_name} parent={span.parent_span_id}')

    # 6. 查看 Flow 执行状态
    print('\n=== Flow 状态 ===')
    states, _ = await ai.registry.flow_state_store.list()
    for state in states:
        print(f'  {state.name}: {state.status}')


if __name__ == '__main__':
    asyncio.run(main())
