import base64
import json

from aiohttp import web

LOG_TAIL = "START RequestId: 0000 Version: $LATEST\nEND RequestId: 0000\n"


async def handle_invoke(request: web.Request) -> web.Response:
    """Imitates POST /2015-03-31/functions/{name}/invocations of the Lambda API."""
    app = request.app
    name = request.match_info['name']
    invocation_type = request.headers.get('X-Amz-Invocation-Type', 'RequestResponse')
    body = await request.text()
    app['invocations'].append({
        'function': name,
        'qualifier': request.query.get('Qualifier'),
        'invocation_type': invocation_type,
        'log_type': request.headers.get('X-Amz-Log-Type'),
        'client_context': request.headers.get('X-Amz-Client-Context'),
        'payload': body,
    })

    if name in app['missing']:
        return web.json_response(
            {'Type': 'User', 'message': f'Function not found: {name}'},
            status=404,
            headers={'x-amzn-ErrorType': 'ResourceNotFoundException'},
        )
    if invocation_type == 'Event':
        return web.Response(status=202)
    if invocation_type == 'DryRun':
        return web.Response(status=204)

    headers = {'X-Amz-Executed-Version': '$LATEST'}
    if request.headers.get('X-Amz-Log-Type') == 'Tail':
        headers['X-Amz-Log-Result'] = base64.b64encode(LOG_TAIL.encode()).decode()
    return web.Response(
        status=200,
        text=json.dumps(app['response_body']),
        content_type='application/json',
        headers=headers,
    )


async def create_mock_server():
    app = web.Application()
    app['invocations'] = []
    app['missing'] = {'missing_function'}
    app['response_body'] = {'result': 'OK'}
    app.router.add_post('/2015-03-31/functions/{name}/invocations', handle_invoke)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, '127.0.0.1', 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]
    base_url = f'http://127.0.0.1:{port}'
    return runner, base_url, app


async def shutdown_mock_server(runner):
    await runner.cleanup()
