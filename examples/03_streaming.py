"""示例 3: 流式 Flow 和流式生成"""

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


@ai.define_streaming_flow(stream_schema=str)
async def countdown(start: int, ctx) -> str:
    """不调用模型的流式 Flow：逐个推送增量"""
    for i in range(start, 0, -1):
        ctx.send_chunk(f'{i}...')
        await asyncio.sleep(0.2)
    return '发射！'


@ai.define_streaming_flow()
async def story(topic: str, ctx) -> str:
    """把模型增量原样转发给调用方"""
    response = await ai.generate(
        prompt=f'用三句话讲一个关于{topic}的故事',
        context=ctx,
        on_chunk=ctx.send_chunk,
    )
    return response.text


async def main():
    print('=== 流式 Flow ===')
    result = countdown.stream(5)
    async for chunk in result.stream:
        print(chunk, end=' ', flush=True)
    print(await result.output)

    print('\n=== 流式生成 ===')
    result = story.stream('一只会写代码的猫')
    async for chunk in result.stream:
        print(chunk.text, end='', flush=True)
    response = await result.output
    print(f'\n\n(共 {len(response)} 字)')

    await ai.stop()


if __name__ == '__main__':
    asyncio.run(main())
