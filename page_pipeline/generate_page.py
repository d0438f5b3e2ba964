import argparse
import json
import sys
import uuid
from pathlib import Path
from typing import Optional

import yaml
from loguru import logger

from .config import load_config
from .errors import ConfigurationError
from .generation_orchestrator import PageGenerationService
from .models import PAGE_SIZES, GenerationRequest, ImageSize, SubjectIdentityProfile


def load_profile(profile_path: str) -> SubjectIdentityProfile:
    """Load a subject identity profile from a YAML file."""
    with open(profile_path, 'r') as f:
        data = yaml.safe_load(f) or {}
    return SubjectIdentityProfile.from_dict(data)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Generate one print-ready coloring book page.')
    parser.add_argument('--prompt', required=True, help='Scene description for the page')
    parser.add_argument('--page', type=int, default=1, help='Page number (used in the storage path)')
    parser.add_argument('--size', choices=sorted(PAGE_SIZES), default=None,
                        help='Generation size (default from config)')
    parser.add_argument('--no-validate', action='store_true', help='Skip quality validation')
    parser.add_argument('--no-reframe', action='store_true', help='Skip print reframing')
    parser.add_argument('--profile', type=str, help='YAML identity profile of the recurring subject')
    parser.add_argument('--config', type=str, help='Path to the config file (default: ./config.yaml if present)')
    parser.add_argument('--asset-id', type=str, help='Asset id (default: new random id)')
    parser.add_argument('--project', type=str, default='default', help='Project id')
    parser.add_argument('--user', type=str, default='local', help='User id')
    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for single page generation."""
    args = build_parser().parse_args(argv)

    try:
        config_path = args.config or ('config.yaml' if Path('config.yaml').exists() else None)
        config = load_config(config_path)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    # Configure logging
    log_dir = Path(config['storage']['root_dir'])
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / "generation.log",
        rotation="500 MB",
        level="INFO"
    )

    size_name = args.size or config['generation'].get('default_size', 'portrait')
    request = GenerationRequest(
        asset_id=args.asset_id or uuid.uuid4().hex,
        prompt=args.prompt,
        size=ImageSize.from_name(size_name),
        identity_profile=load_profile(args.profile) if args.profile else None,
        validate=not args.no_validate,
        reframe=not args.no_reframe,
        page_number=args.page,
        project_id=args.project,
        user_id=args.user,
    )

    try:
        service = PageGenerationService(config)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    result = service.generate_page(request)
    print(json.dumps(result, indent=2))
    return 0 if result['status'] == 'ready' else 1


if __name__ == "__main__":
    sys.exit(main())
