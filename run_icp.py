#!/usr/bin/env python3
"""
Main entry point for ICP point cloud registration.

This script provides a command-line interface for registering two
structured point clouds and inspecting saved results.
"""

import argparse
import logging
import sys

from pcreg import ConfigurationError, ICPRegistration, RegistrationConfig
from pcreg.visualization import plot_convergence


def build_config(args):
    """Load the configuration file and apply command-line overrides."""
    config = RegistrationConfig.from_yaml(args.config) if args.config else RegistrationConfig()
    overrides = {
        'rotation_strategy': args.rotation,
        'weighting': args.weighting,
        'index': args.index,
        'max_iterations': args.max_iterations,
        'index_scale_alpha': args.alpha,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return config.updated(**overrides) if overrides else config


def print_result(result):
    print(f"\n{'='*80}")
    print("RESULTS")
    print("="*80)
    print(f"Variant:      {result.variant}")
    print(f"Iterations:   {result.iterations}")
    print(f"Latency:      {result.latency_ms:.1f} ms")
    print(f"Angle:        {result.angle:.4f} degrees")
    print(f"Axis:         {result.axis}")
    print(f"Translation:  {result.translation}")
    print(f"Scale:        {result.scale:.6f}")
    print(f"\nTransformation matrix:")
    print(result.transformation)


def run_registration(fixed_path, moving_path, config, visualize=False, plot=False,
                     save_results=True, output='icp_results.pkl'):
    """Register the moving cloud to the fixed cloud."""
    print("\n" + "="*80)
    print("ICP Registration")
    print("="*80)

    print(f"\nLoading point clouds...")
    print(f"  Fixed:  {fixed_path}")
    print(f"  Moving: {moving_path}")

    icp = ICPRegistration(fixed_path, moving_path, config=config)

    print(f"  Points per cloud: {len(icp.fixed):,}")
    print(f"  Landmarks:        {config.num_landmarks:,}")

    print(f"\nRunning ICP (rotation={config.rotation_strategy.value}, "
          f"weighting={config.weighting.value}, index={config.index.value})...")
    result = icp.register()
    print_result(result)

    if save_results:
        icp.save_result(output, result)
        print(f"\nResults saved to {output}")

    if plot:
        plot_convergence(result.history, config.angle_threshold, config.translation_threshold)

    if visualize:
        print("\nShowing initial state (before alignment)...")
        icp.visualize_initial()

        print("\nShowing final state (after alignment)...")
        icp.visualize_final()

    return result


def load_results(filepath='icp_results.pkl', plot=False):
    """Print previously saved results."""
    print("\n" + "="*80)
    print("Loading Saved Results")
    print("="*80)

    data = ICPRegistration.load_result(filepath)
    if data is None:
        print(f"File {filepath} not found")
        return None

    print_result(data['result'])
    if plot:
        config = data['config']
        plot_convergence(data['result'].history, config['angle_threshold'],
                         config['translation_threshold'])
    return data


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='ICP Point Cloud Registration',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Register two 640x480 clouds with the default settings
  python run_icp.py register data/fixed.bin data/moving.bin

  # Weighted registration with the power-iteration solver
  python run_icp.py register data/fixed.bin data/moving.bin --rotation power_iteration --weighting robust_inverse_distance

  # Settings from a YAML file, exact kd-tree correspondences, with plots
  python run_icp.py register data/fixed.ply data/moving.ply --config icp.yaml --index kdtree --plot

  # Load and print saved results
  python run_icp.py load
        """
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='mode', help='Mode')

    register_parser = subparsers.add_parser('register', help='Register a moving cloud to a fixed cloud')
    register_parser.add_argument('fixed', type=str, help='Path to the fixed point cloud')
    register_parser.add_argument('moving', type=str, help='Path to the moving point cloud')
    register_parser.add_argument('--config', type=str, default=None,
                                 help='YAML file with registration settings')
    register_parser.add_argument('--rotation', type=str, default=None,
                                 choices=['closed_form', 'power_iteration'],
                                 help='Rotation estimation strategy')
    register_parser.add_argument('--weighting', type=str, default=None,
                                 choices=['none', 'robust_inverse_distance'],
                                 help='Correspondence weighting')
    register_parser.add_argument('--index', type=str, default=None, choices=['rbc', 'kdtree'],
                                 help='Correspondence search index')
    register_parser.add_argument('--max-iterations', type=int, default=None,
                                 help='Iteration cap')
    register_parser.add_argument('--alpha', type=float, default=None,
                                 help='Weight of colour in the correspondence distance')
    register_parser.add_argument('--visualize', action='store_true',
                                 help='Show the clouds before and after alignment')
    register_parser.add_argument('--plot', action='store_true',
                                 help='Plot the convergence of the iterations')
    register_parser.add_argument('--output', type=str, default='icp_results.pkl',
                                 help='Path of the saved results')
    register_parser.add_argument('--no-save', action='store_true',
                                 help='Do not save results')

    load_parser = subparsers.add_parser('load', help='Print saved results')
    load_parser.add_argument('--file', type=str, default='icp_results.pkl',
                             help='Path to saved results file')
    load_parser.add_argument('--plot', action='store_true',
                             help='Plot the convergence of the iterations')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    if args.mode is None:
        parser.print_help()
        return 1

    if args.mode == 'register':
        try:
            config = build_config(args)
        except ConfigurationError as e:
            print(f"Invalid configuration: {e}", file=sys.stderr)
            return 2
        run_registration(args.fixed, args.moving, config, visualize=args.visualize,
                         plot=args.plot, save_results=not args.no_save, output=args.output)
    elif args.mode == 'load':
        if load_results(args.file, plot=args.plot) is None:
            return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
