"""示例 2: 模型 + 工具调用循环（OpenAI 兼容接口）

运行前设置:
    export OPENAI_API_KEY=...
    export OPENAI_BASE_URL=...   # 可选，兼容 OpenAI 协议的服务（vLLM、Ollama 等）
    export MODEL=gpt-4o-mini     # 可选
"""

import asyncio
import os
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tiny_genkit import Genkit, openai_compatible

MODEL = os.getenv('MODEL', 'gpt-4o-mini')

ai = Genkit(
    plugins=[openai_compatible(models=[MODEL], base_url=os.getenv('OPENAI_BASE_URL'))],
    default_model=f'openai/{MODEL}',
)


@ai.define_tool()
def get_weather(city: str) -> str:
    """获取指定城市的天气信息

    Args:
        city: 城市名称
    """
    weather_data = {
        '北京': '晴天，25°C，空气质量良好',
        '上海': '多云，22°C，有轻度雾霾',
        '深圳': '雨天，28°C，建议带伞',
    }
    return weather_data.get(city, f'{city} 的天气信息暂时无法获取')


@ai.define_tool(description='计算数学表达式')
def calculator(expression: str) -> str:
    allowed = set('0123456789+-*/.() ')
    if not all(c in allowed for c in expression):
        return '不支持的表达式'
    return f'{expression} = {eval(expression, {"__builtins__": {}}, {})}'


@ai.define_flow()
async def assistant(question: str, ctx) -> str:
    """带工具的助手"""
    response = await ai.generate(
        system='你是一个有帮助的助手，需要时调用工具。',
        prompt=question,
        tools=['get_weather', 'calculator'],
        context=ctx,
    )
    return response.text


async def main():
    for question in ['北京今天天气怎么样？', '帮我算一下 (12 + 30) * 2']:
        print(f'用户: {question}')
        print(f'助手: {await assistant(question)}\n')

    # 手动模式：工具调用交给调用方处理
    response = await ai.generate(prompt='上海天气如何？', tools=['get_weather'], return_tool_requests=True)
    for req in response.tool_requests:
        print(f'🔧 模型请求调用 {req.name}({req.input})')

    await ai.stop()


if __name__ == '__main__':
    asyncio.run(main())
