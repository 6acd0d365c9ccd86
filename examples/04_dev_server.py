"""示例 4: 开发服务 - Reflection API + Flow HTTP 服务

启动:
    GENKIT_ENV=dev python examples/04_dev_server.py

调用:
    curl -X POST localhost:3400/greet -H 'Content-Type: application/json' -d '{"data": "世界"}'
    curl -N -X POST 'localhost:3400/count?stream=true' -d '{"data": 5}'
    curl localhost:3100/api/actions
    curl -X POST localhost:3100/api/runAction -d '{"key": "/flow/greet", "input": "Genkit"}'

Ctrl+C (SIGINT) 或 SIGTERM 会停止所有服务后退出。
"""

import asyncio
import logging
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tiny_genkit import Genkit

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

ai = Genkit(flow_server=True)


@ai.define_flow(input_schema=str, output_schema=str)
def greet(name: str) -> str:
    """打招呼"""
    return f'你好, {name}!'


@ai.define_streaming_flow(stream_schema=int)
async def count(limit: int, ctx) -> str:
    """逐个推送数字"""
    for i in range(1, limit + 1):
        ctx.send_chunk(i)
        await asyncio.sleep(0.5)
    return f'数到了 {limit}'


def main():
    print(f'环境: {ai.config.runtime.env}')
    print(f'Flow 服务: http://{ai.config.flow_server.host}:{ai.config.flow_server.port}')
    if ai.is_dev:
        print(f'Reflection: http://{ai.config.reflection.host}:{ai.config.reflection.port}/api/actions')
    ai.serve()


if __name__ == '__main__':
    main()
