"""メッセージ送信スクリプト。

HTTP POST で /api/v1/messages にメッセージを送信する開発・テスト用スクリプト。
チャンネル ID を省略した場合は新しいチャンネルを作成する。
"""

import argparse
import http.client
import json
import sys
import time
from typing import Any


def create_parser() -> argparse.ArgumentParser:
    """コマンドライン引数パーサーを作成する。"""
    parser = argparse.ArgumentParser(
        description="チャンネルにメッセージを送信する",
    )
    parser.add_argument(
        "-H",
        "--host",
        default="localhost",
        help="サーバーホスト (デフォルト: localhost)",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=8080,
        help="サーバーポート (デフォルト: 8080)",
    )
    parser.add_argument(
        "-u",
        "--user",
        default="dev",
        help="送信ユーザー ID (デフォルト: dev)",
    )
    parser.add_argument(
        "-c",
        "--channel",
        default=None,
        help="送信先チャンネル ID (省略時は新規作成)",
    )
    parser.add_argument(
        "-n",
        "--count",
        type=int,
        default=1,
        help="送信回数 (デフォルト: 1)",
    )
    parser.add_argument(
        "-i",
        "--interval",
        type=float,
        default=0.0,
        help="送信間隔（秒） (デフォルト: 0.0)",
    )
    parser.add_argument("body", nargs="?", default="hello", help="メッセージ本文")
    return parser


def request(
    host: str, port: int, user: str, path: str, payload: dict[str, Any]
) -> tuple[bool, dict[str, Any] | str]:
    """JSON リクエストを送信する。

    Returns:
        (成功フラグ, レスポンス JSON またはエラーメッセージ) のタプル
    """
    try:
        conn = http.client.HTTPConnection(host, port, timeout=30)
        try:
            conn.request(
                "POST",
                path,
                body=json.dumps(payload),
                headers={"Content-Type": "application/json", "X-User-Id": user},
            )
            response = conn.getresponse()
            body = response.read().decode("utf-8")

            try:
                data = json.loads(body)
            except json.JSONDecodeError:
                return False, f"Invalid JSON response: {body}"
            if response.status in (200, 201):
                return True, data
            return False, f"{response.status} {data.get('error', response.reason)}"
        finally:
            conn.close()
    except ConnectionRefusedError:
        return False, "Connection refused"
    except TimeoutError:
        return False, "Connection timeout"
    except OSError as e:
        return False, str(e)


def main() -> int:
    """メインエントリーポイント。"""
    parser = create_parser()
    args = parser.parse_args()

    channel_id = args.channel
    if channel_id is None:
        success, data = request(
            args.host, args.port, args.user, "/api/v1/channels", {"name": "dev"}
        )
        if not success or not isinstance(data, dict):
            print(f"Error: {data}")
            return 1
        channel_id = data["id"]
        print(f"Created channel {channel_id}")

    for i in range(args.count):
        if i > 0 and args.interval > 0:
            time.sleep(args.interval)

        success, data = request(
            args.host,
            args.port,
            args.user,
            "/api/v1/messages",
            {"channel_id": channel_id, "body": args.body},
        )
        if not success or not isinstance(data, dict):
            print(f"Error: {data}")
            return 1
        print(
            f"[{i + 1}/{args.count}] Message ID: {data['id']} "
            f"(seq: {data['sequence']})"
        )

    print("Done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
