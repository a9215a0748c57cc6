import argparse
import logging
import sys
from typing import List, Optional

from nfe.config import Config
from nfe.downloader import NFeDownloader, describe_error
from nfe.errors import NFeError
from nfe.events import CIENCIA, EVENT_DESCRIPTIONS

CONFIG_FILE = "config.json"


def write(msg: str, log: bool = True) -> None:
    print(msg)
    if log:
        logging.getLogger("download_nfe").info(msg)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Baixa NF-e destinadas ao CNPJ configurado (Distribuição DF-e)."
    )
    parser.add_argument("--config", default=CONFIG_FILE, help="arquivo de configuração JSON")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--chave", help="baixa o XML completo de uma chave de acesso")
    group.add_argument("--manifestar", metavar="CHAVE", help="envia manifestação e baixa o XML")
    parser.add_argument(
        "--evento",
        default=CIENCIA,
        choices=sorted(EVENT_DESCRIPTIONS),
        help="tipo de evento de manifestação (padrão: 210210)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = Config.load(args.config)
    except ValueError as e:
        write(f"Configuração inválida em {args.config}: {e}", log=False)
        return 1
    downloader = NFeDownloader(cfg)
    write(f"Log registrado em: {downloader.configurar_log()}", log=False)
    try:
        if args.manifestar:
            result = downloader.manifestar(args.manifestar, args.evento)
            write(f"Manifestação cStat {result.status_code}: {result.status_message}")
            args.chave = args.manifestar
        if args.chave:
            full = downloader.baixar_chave(args.chave)
            if full.available:
                write(f"XML completo obtido: {args.chave}")
            else:
                write(f"XML completo indisponível para {args.chave}; manifeste a nota primeiro.")
                return 2
            return 0
        downloader.run(write=write)
    except NFeError as e:
        write(describe_error(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
