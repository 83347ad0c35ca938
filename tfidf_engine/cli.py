#!/usr/bin/env python3
import argparse
import json
import logging
import socket
import sys

from . import master, worker
from .client import FlowClient
from .config import JoinStrategy, RunConfig
from .errors import PipelineError
from .pipeline import run_pipeline
from .sources import read_stop_words, tokenize_documents, write_token_stream

LOG = logging.getLogger("tfidf")

usage_msg = """
tfidf-engine – Compute TF-IDF weights over a token stream.

Commands:
  tokenize <docs> <output>        Turn a doc_id<TAB>text file into a token stream.
         [--stop-words FILE]      Optional stop word list (TSV, header 'stop').
  run <inputs>                    Run the flow locally on a thread pool.
  submit <inputs>                 Run the flow on a cluster through its master.
         [--master HOST:PORT]     Master address for submit (default: localhost:50051).
  master                          Start the master (flow + worker registry gRPC).
  worker                          Start a worker and register it with the master.

Run options (run / submit):
  --flow-name NAME --work-dir URI --tfidf-output URI --wc-output URI
  --num-partitions N --num-workers N --max-attempts N
  --corpus-join {broadcast,shuffle} --term-join {broadcast,shuffle}

Examples:
  tfidf-engine tokenize data/rain.txt data/tokens.tsv --stop-words data/en.stop
  tfidf-engine run data/tokens.tsv --num-partitions 8 --tfidf-output out/tfidf.tsv
  tfidf-engine submit hdfs://boss:9000/data/tokens.tsv --work-dir hdfs://boss:9000/tmp
"""


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("inputs", nargs="+", help="Token stream files (TSV or parquet), local paths or URIs")
    parser.add_argument("--flow-name", dest="flow_name", default=None, help="Name of the run (default: tfidf)")
    parser.add_argument("--work-dir", dest="work_dir", default=None, help="Directory for intermediate data")
    parser.add_argument("--tfidf-output", dest="tfidf_output", default=None, help="TF-IDF output file")
    parser.add_argument("--wc-output", dest="word_count_output", default=None, help="Word count output file")
    parser.add_argument("--num-partitions", dest="num_partitions", type=int, default=None, help="Shuffle partitions")
    parser.add_argument("--num-workers", dest="num_workers", type=int, default=None, help="Local worker threads")
    parser.add_argument("--max-attempts", dest="max_task_attempts", type=int, default=None, help="Attempts per task")
    strategies = [s.value for s in JoinStrategy]
    parser.add_argument("--corpus-join", dest="corpus_join", choices=strategies, default=None,
                        help="Strategy for attaching the document count (default: broadcast)")
    parser.add_argument("--term-join", dest="term_join", choices=strategies, default=None,
                        help="Strategy for joining term and document frequencies (default: shuffle)")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tfidf-engine",
        description="Compute TF-IDF weights with a distributed batch dataflow.",
        usage=usage_msg,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    # Tokenize
    p_tokenize = subparsers.add_parser("tokenize", help="Tokenize a document file into a token stream.")
    p_tokenize.add_argument("docs", help="doc_id<TAB>text file with a header row")
    p_tokenize.add_argument("output", help="Token stream file to write (.tsv or .parquet)")
    p_tokenize.add_argument("--stop-words", dest="stop_words", default=None, help="Stop word list")

    # Run / submit
    p_run = subparsers.add_parser("run", help="Run the flow locally.")
    _add_run_options(p_run)
    p_submit = subparsers.add_parser("submit", help="Run the flow on a cluster.")
    _add_run_options(p_submit)
    p_submit.add_argument("--master", default=f"localhost:{master.CLIENT_PORT}", help="Master address")

    # Servers
    p_master = subparsers.add_parser("master", help="Start the master.")
    p_master.add_argument("--port", type=int, default=master.CLIENT_PORT)
    p_master.add_argument("--registry-port", type=int, default=master.REGISTRY_PORT)
    p_worker = subparsers.add_parser("worker", help="Start a worker.")
    p_worker.add_argument("--master", default=f"localhost:{master.REGISTRY_PORT}", help="Master registry address")
    p_worker.add_argument("--host", default=None, help="Host name the master uses to reach this worker")
    p_worker.add_argument("--port", type=int, default=worker.TASK_SERVER_PORT)

    # Help fallback
    subparsers.add_parser("help", help="Show help")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(0)
    return args


def _config(args: argparse.Namespace) -> RunConfig:
    return RunConfig.from_env(
        inputs=tuple(args.inputs),
        flow_name=args.flow_name,
        work_dir=args.work_dir,
        tfidf_output=args.tfidf_output,
        word_count_output=args.word_count_output,
        num_partitions=args.num_partitions,
        num_workers=args.num_workers,
        max_task_attempts=args.max_task_attempts,
        corpus_join=args.corpus_join,
        term_join=args.term_join,
    )


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    command = args.command

    if command == "tokenize":
        stop_words = read_stop_words(args.stop_words) if args.stop_words else None
        tokens = tokenize_documents(args.docs, stop_words)
        write_token_stream(tokens, args.output)
        LOG.info("Wrote %d token(s) to %s", len(tokens), args.output)
    elif command in ("run", "submit"):
        config = _config(args)
        try:
            if command == "run":
                report = run_pipeline(config).report.to_dict()
            else:
                with FlowClient(args.master) as client:
                    report = client.run_flow(config)
        except PipelineError as e:
            print(f"Run failed: {e}", file=sys.stderr)
            return 1
        print(json.dumps(report, indent=2))
    elif command == "master":
        master.start_master(args.port, args.registry_port)
    elif command == "worker":
        worker.start_worker(args.master, args.host or socket.gethostname(), args.port)
    else:
        print(usage_msg)
    return 0


if __name__ == "__main__":
    sys.exit(main())
