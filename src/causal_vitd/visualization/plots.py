"""
Visualization module for the Vitamin D pandemic analysis.
"""

import matplotlib.pyplot as plt
import seaborn as sns
import plotly.graph_objects as go
from plotly.subplots import make_subplots
import pandas as pd
import numpy as np
from typing import Dict, List, Tuple, Optional
import logging

from ..config import PERIOD_COL, MONTH_COL, OUTCOME_COL, DATE_COL, PERIOD_BEFORE, PERIOD_DURING
from ..models.causal_models import CausalEstimate, SubgroupEstimate
from ..models.bootstrap import BootstrapResult


logger = logging.getLogger(__name__)

MONTH_LABELS = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']


class VitaminDVisualization:
    """Creates the report figures for the period comparison and causal analysis."""

    def __init__(self, figsize: Tuple[int, int] = (10, 6)):
        """
        Initialize visualization settings.

        Args:
            figsize: Default figure size
        """
        plt.style.use('default')
        sns.set_palette("husl")
        self.figsize = figsize
        self.colors = {
            'primary': '#2E86AB',
            'secondary': '#A23B72',
            'accent': '#F18F01',
            'neutral': '#C73E1D',
            'light_gray': '#F5F5F5',
            'dark_gray': '#333333'
        }
        self.period_colors = {PERIOD_BEFORE: self.colors['primary'], PERIOD_DURING: self.colors['secondary']}

    def _finish(self, fig, save_path: Optional[str], name: str) -> None:
        fig.tight_layout()
        if save_path:
            fig.savefig(save_path, dpi=300, bbox_inches='tight')
            logger.info(f"{name} saved to {save_path}")
        plt.show()
        plt.close(fig)

    def plot_data_overview(self, df: pd.DataFrame, save_path: Optional[str] = None) -> None:
        """
        Create data overview plots.

        Args:
            df: Preprocessed dataset
            save_path: Path to save the figure
        """
        fig, axes = plt.subplots(2, 2, figsize=(14, 10))
        fig.suptitle('Dataset Overview', fontsize=16, fontweight='bold')

        # Age bracket by period
        age_counts = df.groupby(['age_bracket', PERIOD_COL]).size().unstack(fill_value=0)
        age_counts.plot(kind='bar', ax=axes[0, 0],
                        color=[self.period_colors.get(c, self.colors['accent']) for c in age_counts.columns])
        axes[0, 0].set_title('Age Bracket by Period')
        axes[0, 0].set_xlabel('Age Bracket')
        axes[0, 0].set_ylabel('Count')
        axes[0, 0].tick_params(axis='x', rotation=0)

        # Gender distribution
        gender_counts = df['gender'].value_counts()
        axes[0, 1].pie(gender_counts.values, labels=gender_counts.index, autopct='%1.1f%%',
                       colors=[self.colors['primary'], self.colors['secondary']])
        axes[0, 1].set_title('Gender Distribution')

        # Tests per season and period
        season_counts = df.groupby(['season', PERIOD_COL]).size().unstack(fill_value=0)
        season_counts.plot(kind='bar', ax=axes[1, 0],
                           color=[self.period_colors.get(c, self.colors['accent']) for c in season_counts.columns])
        axes[1, 0].set_title('Tests per Season')
        axes[1, 0].set_xlabel('Season')
        axes[1, 0].set_ylabel('Count')
        axes[1, 0].tick_params(axis='x', rotation=0)

        # Value distribution
        for period, group in df.groupby(PERIOD_COL):
            axes[1, 1].hist(group[OUTCOME_COL].dropna(), bins=40, alpha=0.6, label=period,
                            color=self.period_colors.get(period))
        axes[1, 1].set_title('Vitamin D Distribution')
        axes[1, 1].set_xlabel('Vitamin D (ng/mL)')
        axes[1, 1].set_ylabel('Frequency')
        axes[1, 1].legend()

        self._finish(fig, save_path, "Data overview plot")

    def plot_monthly_trend(self, trend: pd.DataFrame, save_path: Optional[str] = None) -> None:
        """
        Line chart of the monthly mean Vitamin D level per period.

        Args:
            trend: Output of stats.descriptive.monthly_trend
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)

        for period, group in trend.groupby(PERIOD_COL):
            group = group.sort_values(MONTH_COL)
            ax.plot(group[MONTH_COL], group['mean'], marker='o', label=period,
                    color=self.period_colors.get(period))
            ax.fill_between(group[MONTH_COL],
                            group['mean'] - 1.96 * group['sem'],
                            group['mean'] + 1.96 * group['sem'],
                            alpha=0.2, color=self.period_colors.get(period))

        ax.set_xticks(range(1, 13))
        ax.set_xticklabels(MONTH_LABELS)
        ax.set_xlabel('Month')
        ax.set_ylabel('Mean Vitamin D (ng/mL)')
        ax.set_title('Monthly Mean Vitamin D Before and During the Pandemic', fontweight='bold')
        ax.legend(title='Period')
        ax.grid(True, alpha=0.3)

        self._finish(fig, save_path, "Monthly trend plot")

    def plot_deficiency_rates(
        self,
        table: pd.DataFrame,
        group_col: str,
        save_path: Optional[str] = None
    ) -> None:
        """
        Error-bar chart of deficiency rates per group and period with 95% Wald intervals.

        Args:
            table: Output of stats.descriptive.deficiency_table grouped by group_col
            group_col: Grouping column of the table
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)

        groups = table[group_col].astype(str).tolist()
        x = np.arange(len(groups))
        offsets = {PERIOD_BEFORE: -0.1, PERIOD_DURING: 0.1}

        for period, offset in offsets.items():
            n = table[f'n_{period}'].astype(float).replace(0, np.nan)
            rate = table[f'n_deficient_{period}'] / n
            err = 1.96 * np.sqrt(rate * (1 - rate) / n)
            ax.errorbar(x + offset, 100 * rate, yerr=100 * err, fmt='o', capsize=5,
                        label=period, color=self.period_colors[period])

        for i, p_value in enumerate(table['p_value']):
            if pd.notna(p_value) and p_value < 0.05:
                ax.text(x[i], ax.get_ylim()[1] * 0.95, '*', ha='center', fontsize=16,
                        color=self.colors['neutral'], fontweight='bold')

        ax.set_xticks(x)
        ax.set_xticklabels(groups)
        ax.set_xlabel(group_col)
        ax.set_ylabel('Deficient (%)')
        ax.set_title(f'Vitamin D Deficiency Rate by {group_col}', fontweight='bold')
        ax.legend(title='Period')
        ax.grid(True, alpha=0.3)

        self._finish(fig, save_path, "Deficiency rate plot")

    def plot_seasonal_means(self, means: pd.DataFrame, save_path: Optional[str] = None) -> None:
        """
        Bar chart of mean Vitamin D per season and period.

        Args:
            means: Output of stats.descriptive.group_means by ['season', 'period']
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)
        sns.barplot(data=means, x='season', y='mean', hue=PERIOD_COL, ax=ax,
                    palette=self.period_colors,
                    order=[s for s in ['Winter', 'Spring', 'Summer', 'Autumn'] if s in set(means['season'])])
        ax.set_xlabel('Season')
        ax.set_ylabel('Mean Vitamin D (ng/mL)')
        ax.set_title('Seasonal Mean Vitamin D', fontweight='bold')
        ax.grid(True, axis='y', alpha=0.3)

        self._finish(fig, save_path, "Seasonal means plot")

    def plot_bootstrap_distribution(self, result: BootstrapResult, save_path: Optional[str] = None) -> None:
        """
        Histogram of bootstrap estimates with the percentile interval.

        Args:
            result: Bootstrap result
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)

        ax.hist(result.estimates, bins=40, color=self.colors['primary'], alpha=0.7)
        ax.axvline(result.point_estimate, color=self.colors['dark_gray'], linewidth=2, label='Mean')
        ax.axvline(result.ci_lower, color=self.colors['neutral'], linestyle='--', label='95% CI')
        ax.axvline(result.ci_upper, color=self.colors['neutral'], linestyle='--')
        ax.axvline(0, color=self.colors['accent'], linestyle=':', alpha=0.7)

        ax.set_xlabel(f'Estimate ({result.statistic})')
        ax.set_ylabel('Trials')
        ax.set_title(f'Bootstrap Distribution ({result.n_succeeded}/{result.n_trials} trials)',
                     fontweight='bold')
        ax.legend()
        ax.grid(True, alpha=0.3)

        self._finish(fig, save_path, "Bootstrap distribution plot")

    def plot_treatment_effects(
        self,
        estimates: Dict[str, CausalEstimate],
        save_path: Optional[str] = None
    ) -> None:
        """
        Plot treatment effect estimates with confidence intervals.

        Args:
            estimates: Dictionary of causal estimates
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)

        methods = list(estimates.keys())
        coefficients = [est.coefficient for est in estimates.values()]
        errors_lower = [est.coefficient - est.ci_lower for est in estimates.values()]
        errors_upper = [est.ci_upper - est.coefficient for est in estimates.values()]

        y_pos = np.arange(len(methods))

        ax.errorbar(coefficients, y_pos, xerr=[errors_lower, errors_upper],
                    fmt='o', markersize=8, capsize=5, capthick=2,
                    color=self.colors['primary'], ecolor=self.colors['dark_gray'])
        ax.axvline(x=0, color=self.colors['neutral'], linestyle='--', alpha=0.7)

        ax.set_yticks(y_pos)
        ax.set_yticklabels(methods)
        ax.set_xlabel('Effect on Vitamin D (ng/mL)')
        ax.set_title('Estimated Pandemic Effect on Vitamin D', fontweight='bold')
        ax.grid(True, alpha=0.3)

        for i, est in enumerate(estimates.values()):
            if est.is_significant:
                ax.text(est.coefficient, i + 0.1, '*', fontsize=20,
                        color=self.colors['neutral'], fontweight='bold')

        self._finish(fig, save_path, "Treatment effects plot")

    def plot_feature_importance(self, importances: pd.Series, save_path: Optional[str] = None) -> None:
        """
        Bar chart of causal forest covariate importances.

        Args:
            importances: Importance per covariate
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)
        importances = importances.sort_values()
        ax.barh(importances.index, importances.values, color=self.colors['accent'])
        ax.set_xlabel('Importance')
        ax.set_title('Causal Forest Covariate Importance', fontweight='bold')
        ax.grid(True, axis='x', alpha=0.3)

        self._finish(fig, save_path, "Feature importance plot")

    def plot_forest(
        self,
        subgroups: List[SubgroupEstimate],
        overall: Optional[CausalEstimate] = None,
        save_path: Optional[str] = None
    ) -> None:
        """
        Forest plot of subgroup effects, each labelled with its sample size.

        Args:
            subgroups: Subgroup estimates
            overall: Optional population estimate drawn as a reference row
            save_path: Path to save the figure
        """
        rows = [s for s in subgroups if s.n > 0]
        fig, ax = plt.subplots(figsize=(self.figsize[0], max(4, 0.4 * (len(rows) + 2))))

        labels = [f"{s.label} (n={s.n})" for s in rows]
        estimates = [s.estimate for s in rows]
        lower = [s.estimate - s.ci_lower for s in rows]
        upper = [s.ci_upper - s.estimate for s in rows]

        if overall is not None:
            labels.append(f"Overall (n={overall.n})")
            estimates.append(overall.coefficient)
            lower.append(overall.coefficient - overall.ci_lower)
            upper.append(overall.ci_upper - overall.coefficient)

        y_pos = np.arange(len(labels))[::-1]
        ax.errorbar(estimates, y_pos, xerr=[lower, upper], fmt='s', markersize=6, capsize=4,
                    color=self.colors['secondary'], ecolor=self.colors['dark_gray'])
        if overall is not None:
            ax.axvline(overall.coefficient, color=self.colors['primary'], linestyle=':', alpha=0.7)
        ax.axvline(0, color=self.colors['neutral'], linestyle='--', alpha=0.7)

        ax.set_yticks(y_pos)
        ax.set_yticklabels(labels)
        ax.set_xlabel('Effect on Vitamin D (ng/mL)')
        ax.set_title('Subgroup Sensitivity of the Pandemic Effect', fontweight='bold')
        ax.grid(True, axis='x', alpha=0.3)

        self._finish(fig, save_path, "Forest plot")

    def plot_stringency_timeseries(
        self,
        df: pd.DataFrame,
        stringency: pd.DataFrame,
        save_path: Optional[str] = None
    ):
        """
        Interactive chart of weekly mean Vitamin D against the stringency index.

        Args:
            df: Preprocessed dataset
            stringency: Daily stringency table ('date', 'stringency_index')
            save_path: Path to an HTML file to write

        Returns:
            The plotly figure
        """
        weekly = (
            df.set_index(pd.to_datetime(df[DATE_COL], format='mixed'))[OUTCOME_COL]
            .resample('W').mean()
            .dropna()
        )

        fig = make_subplots(specs=[[{"secondary_y": True}]])
        fig.add_trace(
            go.Scatter(x=weekly.index, y=weekly.values, mode='lines+markers',
                       name='Weekly mean Vitamin D', line=dict(color=self.colors['primary'])),
            secondary_y=False
        )
        fig.add_trace(
            go.Scatter(x=stringency['date'], y=stringency['stringency_index'], mode='lines',
                       name='Stringency index', line=dict(color=self.colors['neutral'])),
            secondary_y=True
        )
        fig.update_layout(title='Vitamin D and Policy Stringency', hovermode='x unified')
        fig.update_yaxes(title_text='Vitamin D (ng/mL)', secondary_y=False)
        fig.update_yaxes(title_text='Stringency index', secondary_y=True)

        if save_path:
            fig.write_html(str(save_path))
            logger.info(f"Stringency time series saved to {save_path}")

        return fig

    def plot_causal_dag(self, save_path: Optional[str] = None) -> None:
        """
        Create a directed acyclic graph showing the causal assumptions.

        Args:
            save_path: Path to save the figure
        """
        import networkx as nx

        G = nx.DiGraph()

        nodes = {
            'Age': (0, 2),
            'Gender': (0, 1),
            'Season': (0, 0),
            'Pandemic': (2, 1),
            'Lockdown\nStringency': (3, 0.3),
            'Vitamin D': (4, 1)
        }

        for node, pos in nodes.items():
            G.add_node(node, pos=pos)

        edges = [
            ('Age', 'Pandemic'),
            ('Gender', 'Pandemic'),
            ('Season', 'Pandemic'),
            ('Age', 'Vitamin D'),
            ('Gender', 'Vitamin D'),
            ('Season', 'Vitamin D'),
            ('Pandemic', 'Lockdown\nStringency'),
            ('Pandemic', 'Vitamin D'),
            ('Lockdown\nStringency', 'Vitamin D')
        ]

        G.add_edges_from(edges)

        fig, ax = plt.subplots(figsize=(12, 8))

        pos = nx.get_node_attributes(G, 'pos')

        nx.draw_networkx_nodes(G, pos, node_color=self.colors['primary'],
                               node_size=3000, alpha=0.9, ax=ax)
        nx.draw_networkx_edges(G, pos, edge_color=self.colors['dark_gray'],
                               arrows=True, arrowsize=20, alpha=0.7, ax=ax)
        nx.draw_networkx_labels(G, pos, font_size=10, font_weight='bold', ax=ax)

        # Treatment and outcome
        nx.draw_networkx_nodes(G, pos, nodelist=['Pandemic'],
                               node_color=self.colors['accent'],
                               node_size=3000, alpha=0.9, ax=ax)
        nx.draw_networkx_nodes(G, pos, nodelist=['Vitamin D'],
                               node_color=self.colors['neutral'],
                               node_size=3000, alpha=0.9, ax=ax)

        ax.set_title('Causal Directed Acyclic Graph (DAG)', fontweight='bold', fontsize=14)
        ax.axis('off')

        legend_elements = [
            plt.Line2D([0], [0], marker='o', color='w', markerfacecolor=self.colors['primary'],
                       markersize=15, label='Confounders / Mediators'),
            plt.Line2D([0], [0], marker='o', color='w', markerfacecolor=self.colors['accent'],
                       markersize=15, label='Treatment'),
            plt.Line2D([0], [0], marker='o', color='w', markerfacecolor=self.colors['neutral'],
                       markersize=15, label='Outcome')
        ]
        ax.legend(handles=legend_elements, loc='upper right')

        self._finish(fig, save_path, "Causal DAG")
